import datetime
import enum
from decimal import Decimal

from referral_engine.data_access.models import BaseModel, classproperty


class EarningStatus(str, enum.Enum):
    PENDING = 'pending'
    PAID = 'paid'


class Earning(BaseModel):
    id: int = None
    earner_user_id: int = None
    source_user_id: int = None
    transaction_id: str = None
    transaction_type: str = None
    level: int = None
    percentage: Decimal = None
    revenue_minor_units: int = None
    amount_minor_units: int = None
    capped: bool = False
    original_amount_minor_units: int = None
    status: EarningStatus = EarningStatus.PENDING
    month_key: str = None
    claimed_by_batch_id: str = None
    claimed_at: datetime.datetime = None
    payout_batch_id: str = None
    paid_at: datetime.datetime = None
    created_at: datetime.datetime = None

    key_fields = ["id"]

    db_excluded_fields = ["created_at"]
    non_persistent_fields = ["id", "created_at"]

    def set_from_dict(self, row: dict = None):
        super().set_from_dict(row)

        if row and row.get("status"):
            self.status = EarningStatus(row["status"])

        return self

    @classproperty
    def schema_name(self) -> str:
        return "app"

    @classproperty
    def table_name(self) -> str:
        return "referral_earnings"

    @property
    def is_paid(self) -> bool:
        return self.status == EarningStatus.PAID
