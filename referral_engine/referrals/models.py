import datetime
import enum
import secrets
import string
from typing import List, Optional

from referral_engine.data_access.models import BaseModel, classproperty
from referral_engine.referrals.config import REFERRAL_CODE_PREFIX, REFERRAL_CODE_LENGTH
from referral_engine.referrals.exceptions import InvalidInviteTransitionException

CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_referral_code() -> str:
    return REFERRAL_CODE_PREFIX + "".join(
        secrets.choice(CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))


def normalize_phone_number(phone_number: Optional[str]) -> str:
    """Strips formatting, keeping the digits and a leading "+"."""
    if not phone_number:
        return ""

    phone_number = phone_number.strip()
    digits = "".join(c for c in phone_number if c.isdigit())
    if phone_number.startswith("+") and digits:
        return "+" + digits
    return digits


class InviteStatus(str, enum.Enum):
    PENDING = 'pending'
    SIGNED_UP = 'signed_up'
    ACTIVATED = 'activated'
    EXPIRED = 'expired'


INVITE_TRANSITIONS = {
    InviteStatus.PENDING: {InviteStatus.SIGNED_UP, InviteStatus.EXPIRED},
    InviteStatus.SIGNED_UP: {InviteStatus.ACTIVATED, InviteStatus.EXPIRED},
    InviteStatus.ACTIVATED: set(),
    InviteStatus.EXPIRED: set(),
}


class Invite(BaseModel):
    id: int = None
    code: str = None
    inviter_user_id: int = None
    invitee_phone_number: str = None
    invitee_user_id: int = None
    language: str = None
    channel: str = None
    status: InviteStatus = InviteStatus.PENDING
    invited_at: datetime.datetime = None
    signed_up_at: datetime.datetime = None
    activated_at: datetime.datetime = None
    expired_at: datetime.datetime = None
    sms_sent_at: datetime.datetime = None

    key_fields = ["id"]

    non_persistent_fields = ["id"]

    def set_from_dict(self, row: dict = None):
        super().set_from_dict(row)

        if row and row.get("status"):
            self.status = InviteStatus(row["status"])

        return self

    @classproperty
    def schema_name(self) -> str:
        return "app"

    @classproperty
    def table_name(self) -> str:
        return "referral_invites"

    def can_transition_to(self, status: InviteStatus) -> bool:
        return status in INVITE_TRANSITIONS[self.status]

    def mark_signed_up(self, user_id: int, now: datetime.datetime):
        self._transition(InviteStatus.SIGNED_UP)
        self.invitee_user_id = user_id
        self.signed_up_at = now

    def mark_activated(self, now: datetime.datetime):
        self._transition(InviteStatus.ACTIVATED)
        self.activated_at = now

    def mark_expired(self, now: datetime.datetime):
        self._transition(InviteStatus.EXPIRED)
        self.expired_at = now

    def _transition(self, status: InviteStatus):
        if not self.can_transition_to(status):
            raise InvalidInviteTransitionException(self.id, self.status,
                                                   status)
        self.status = status


class ReferralCode(BaseModel):
    user_id: int = None
    code: str = None
    created_at: datetime.datetime = None

    key_fields = ["user_id"]

    db_excluded_fields = ["created_at"]
    non_persistent_fields = ["created_at"]

    @classproperty
    def schema_name(self) -> str:
        return "app"

    @classproperty
    def table_name(self) -> str:
        return "referral_codes"


class ReferralChain(BaseModel):
    """
    Upline snapshot of a user. `ancestor_ids[0]` is the direct inviter
    (level 1), the last element is the deepest level kept.
    """
    user_id: int = None
    ancestor_ids: List[int] = None
    depth: int = 0
    created_at: datetime.datetime = None

    key_fields = ["user_id"]

    db_excluded_fields = ["created_at"]
    non_persistent_fields = ["created_at"]

    @classproperty
    def schema_name(self) -> str:
        return "app"

    @classproperty
    def table_name(self) -> str:
        return "referral_chains"

    def get_ancestor(self, level: int) -> Optional[int]:
        if level < 1 or level > self.depth:
            return None
        return self.ancestor_ids[level - 1]

    def levels(self):
        for level, ancestor_id in enumerate(self.ancestor_ids[:self.depth],
                                            start=1):
            yield level, ancestor_id
