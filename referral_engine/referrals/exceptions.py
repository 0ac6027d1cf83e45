from referral_engine.exceptions import ReferralEngineException


class InvalidInviteTransitionException(ReferralEngineException):

    def __init__(self, invite_id, from_status, to_status):
        super().__init__(
            f'Invite {invite_id} can not move from {from_status} to {to_status}.'
        )
        self.invite_id = invite_id
        self.from_status = from_status
        self.to_status = to_status
