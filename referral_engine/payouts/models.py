import datetime
import enum
from typing import List

from referral_engine.data_access.db_lock import ResourceType
from referral_engine.data_access.models import BaseModel, classproperty, ResourceVersion
from referral_engine.utils import DATE_ISO8601_FORMAT

BATCH_ID_PREFIX = "PAYOUT-"
LEDGER_REFERENCE_PREFIX = "REF_PAYOUT_"


def make_batch_id(payout_date: datetime.date) -> str:
    return BATCH_ID_PREFIX + payout_date.strftime(DATE_ISO8601_FORMAT)


def make_ledger_reference(batch_id: str, user_id: int,
                          first_earning_id: int) -> str:
    """The lowest earning id keeps the reference unique when a resumed batch pays the same user again."""
    return f"{LEDGER_REFERENCE_PREFIX}{batch_id}_{user_id}_{first_earning_id}"


class PayoutBatchStatus(str, enum.Enum):
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'


class FailedUser:

    def __init__(self,
                 user_id: int,
                 reason: str,
                 earnings_count: int = 0,
                 amount_minor_units: int = 0):
        self.user_id = user_id
        self.reason = reason
        self.earnings_count = earnings_count
        self.amount_minor_units = amount_minor_units

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "reason": self.reason,
            "earnings_count": self.earnings_count,
            "amount_minor_units": self.amount_minor_units,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FailedUser":
        return cls(data["user_id"], data["reason"],
                   data.get("earnings_count", 0),
                   data.get("amount_minor_units", 0))

    def __eq__(self, other):
        return isinstance(other, FailedUser) and self.to_dict(
        ) == other.to_dict()

    def __repr__(self):
        return f"FailedUser({self.to_dict()!r})"


class BatchResult:

    def __init__(self,
                 batch_id: str,
                 payout_date: datetime.date,
                 status: PayoutBatchStatus,
                 total_users: int = 0,
                 total_amount_minor_units: int = 0,
                 total_earnings_count: int = 0,
                 failed_users: List[FailedUser] = None,
                 message: str = None,
                 already_completed: bool = False):
        self.batch_id = batch_id
        self.payout_date = payout_date
        self.status = status
        self.total_users = total_users
        self.total_amount_minor_units = total_amount_minor_units
        self.total_earnings_count = total_earnings_count
        self.failed_users = failed_users or []
        self.message = message
        self.already_completed = already_completed

    @property
    def is_completed(self) -> bool:
        return self.status == PayoutBatchStatus.COMPLETED


class PayoutBatch(BaseModel, ResourceVersion):
    batch_id: str = None
    payout_date: datetime.date = None
    status: PayoutBatchStatus = PayoutBatchStatus.PROCESSING
    total_users: int = 0
    total_amount_minor_units: int = 0
    total_earnings_count: int = 0
    failed_users: list = None
    message: str = None
    error: str = None
    version: int = 0
    started_at: datetime.datetime = None
    completed_at: datetime.datetime = None
    created_at: datetime.datetime = None

    key_fields = ["batch_id"]

    db_excluded_fields = ["created_at"]
    non_persistent_fields = ["created_at"]

    def set_from_dict(self, row: dict = None):
        super().set_from_dict(row)

        if row and row.get("status"):
            self.status = PayoutBatchStatus(row["status"])

        return self

    @classproperty
    def schema_name(self) -> str:
        return "app"

    @classproperty
    def table_name(self) -> str:
        return "referral_payout_batches"

    @property
    def resource_type(self) -> ResourceType:
        return ResourceType.PAYOUT_BATCH

    @property
    def resource_id(self) -> int:
        return self.payout_date.toordinal()

    @property
    def resource_version(self):
        return self.version

    def update_version(self):
        self.version = self.version + 1 if self.version else 1

    @property
    def is_completed(self) -> bool:
        return self.status == PayoutBatchStatus.COMPLETED

    def get_failed_users(self) -> List[FailedUser]:
        return [FailedUser.from_dict(i) for i in self.failed_users or []]

    def to_result(self, already_completed: bool = False) -> BatchResult:
        return BatchResult(batch_id=self.batch_id,
                           payout_date=self.payout_date,
                           status=self.status,
                           total_users=self.total_users or 0,
                           total_amount_minor_units=self.total_amount_minor_units
                           or 0,
                           total_earnings_count=self.total_earnings_count or 0,
                           failed_users=self.get_failed_users(),
                           message=self.message,
                           already_completed=already_completed)
