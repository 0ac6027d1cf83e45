import datetime

from referral_engine.data_access.models import BaseModel, classproperty

KYC_STATUS_VERIFIED = "verified"


class User(BaseModel):
    id: int = None
    phone_number: str = None
    first_name: str = None
    last_name: str = None
    kyc_status: str = None
    kyc_tier: int = None
    created_at: datetime.datetime = None

    key_fields = ["id"]

    db_excluded_fields = ["created_at"]
    non_persistent_fields = ["id", "created_at"]

    @classproperty
    def schema_name(self) -> str:
        return "app"

    @classproperty
    def table_name(self) -> str:
        return "users"

    @property
    def full_name(self) -> str:
        return " ".join(
            filter(None, [self.first_name, self.last_name])).strip()

    def is_kyc_verified(self) -> bool:
        return self.kyc_status == KYC_STATUS_VERIFIED

    def account_age_days(self, now: datetime.datetime) -> int:
        if not self.created_at:
            return 0
        created_at = self.created_at
        if created_at.tzinfo is None and now.tzinfo is not None:
            created_at = created_at.replace(tzinfo=now.tzinfo)
        return (now - created_at).days
