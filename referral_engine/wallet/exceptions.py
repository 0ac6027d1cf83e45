from referral_engine.exceptions import ReferralEngineException


class WalletNotFoundException(ReferralEngineException):

    def __init__(self, user_id):
        super().__init__(f'Wallet not found for user {user_id}.')
        self.user_id = user_id


class InvalidCreditAmountException(ReferralEngineException):

    def __init__(self, amount_minor_units):
        super().__init__(
            f'Credit amount must be a positive integer, got {amount_minor_units!r}.'
        )
