import datetime
import enum

from referral_engine.data_access.models import BaseModel, classproperty


class LedgerTransactionType(str, enum.Enum):
    CREDIT = 'credit'


class Wallet(BaseModel):
    user_id: int = None
    balance_minor_units: int = None
    currency: str = None
    updated_at: datetime.datetime = None

    key_fields = ["user_id"]

    db_excluded_fields = ["updated_at"]
    non_persistent_fields = ["updated_at"]

    @classproperty
    def schema_name(self) -> str:
        return "app"

    @classproperty
    def table_name(self) -> str:
        return "wallets"


class WalletCredit:

    def __init__(self, user_id: int, amount_minor_units: int,
                 balance_minor_units: int):
        self.user_id = user_id
        self.amount_minor_units = amount_minor_units
        self.balance_minor_units = balance_minor_units


class LedgerTransaction(BaseModel):
    id: int = None
    reference: str = None
    user_id: int = None
    amount_minor_units: int = None
    type: LedgerTransactionType = LedgerTransactionType.CREDIT
    description: str = None
    metadata: dict = None
    created_at: datetime.datetime = None

    key_fields = ["id"]

    db_excluded_fields = ["created_at"]
    non_persistent_fields = ["id", "created_at"]

    def set_from_dict(self, row: dict = None):
        super().set_from_dict(row)

        if row and row.get("type"):
            self.type = LedgerTransactionType(row["type"])

        return self

    @classproperty
    def schema_name(self) -> str:
        return "app"

    @classproperty
    def table_name(self) -> str:
        return "ledger_transactions"
