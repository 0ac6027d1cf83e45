from abc import ABC, abstractmethod

from referral_engine.referrals.models import Invite
from referral_engine.utils import get_logger

logger = get_logger(__name__)


class InviteDeliveryInterface(ABC):

    @abstractmethod
    def send_invite(self, invite: Invite, inviter_name: str, share_link: str):
        pass


class LoggingInviteDelivery(InviteDeliveryInterface):
    """Records the invite message instead of sending it."""

    def send_invite(self, invite: Invite, inviter_name: str, share_link: str):
        logger.info("Invite message",
                    extra={
                        "invite_id": invite.id,
                        "phone_number": invite.invitee_phone_number,
                        "language": invite.language,
                        "text": f"{inviter_name} invited you to MyMoolah. "
                                f"Sign up with code {invite.code}: {share_link}",
                    })
