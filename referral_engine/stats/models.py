import datetime
from typing import Dict

from referral_engine.data_access.models import BaseModel, classproperty


class UserReferralStats(BaseModel):
    user_id: int = None
    total_invites_sent: int = 0
    total_referrals: int = 0
    active_referrals: int = 0
    level_counts: Dict[str, int] = None
    total_earned_minor_units: int = 0
    total_paid_minor_units: int = 0
    total_pending_minor_units: int = 0
    month_key: str = None
    month_earned_minor_units: int = 0
    month_paid_minor_units: int = 0
    level_month_amounts: Dict[str, int] = None
    updated_at: datetime.datetime = None

    key_fields = ["user_id"]

    db_excluded_fields = ["updated_at"]
    non_persistent_fields = ["updated_at"]

    def __init__(self, user_id: int = None):
        self.user_id = user_id
        self.level_counts = {}
        self.level_month_amounts = {}

    @classproperty
    def schema_name(self) -> str:
        return "app"

    @classproperty
    def table_name(self) -> str:
        return "user_referral_stats"

    def ensure_month(self, month_key: str) -> bool:
        """Zeroes the month fields once the stored month is not `month_key`."""
        if self.month_key == month_key:
            return False

        self.month_key = month_key
        self.month_earned_minor_units = 0
        self.month_paid_minor_units = 0
        self.level_month_amounts = {}
        return True

    def get_level_count(self, level: int) -> int:
        return (self.level_counts or {}).get(str(level), 0)

    def increment_level_count(self, level: int):
        self.level_counts = dict(self.level_counts or {})
        self.level_counts[str(level)] = self.get_level_count(level) + 1

    def get_level_month_amount(self, level: int) -> int:
        return (self.level_month_amounts or {}).get(str(level), 0)

    def add_level_month_amount(self, level: int, amount_minor_units: int):
        self.level_month_amounts = dict(self.level_month_amounts or {})
        self.level_month_amounts[str(
            level)] = self.get_level_month_amount(level) + amount_minor_units
