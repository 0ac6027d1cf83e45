from referral_engine.exceptions import ReferralEngineException


class PayoutBatchException(ReferralEngineException):

    def __init__(self, batch_id, message='Payout batch failed.'):
        super().__init__(f'{batch_id}: {message}')
        self.batch_id = batch_id


class ClaimLostException(ReferralEngineException):

    def __init__(self, batch_id, user_id, expected, updated):
        super().__init__(
            f'Batch {batch_id} holds {updated} of {expected} claimed earnings of user {user_id}.'
        )
