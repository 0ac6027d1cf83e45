from referral_engine.utils import get_logger
from referral_engine.wallet.exceptions import WalletNotFoundException, InvalidCreditAmountException
from referral_engine.wallet.interfaces import WalletServiceInterface, LedgerInterface
from referral_engine.wallet.models import LedgerTransaction, LedgerTransactionType, WalletCredit
from referral_engine.wallet.repository import WalletRepository

logger = get_logger(__name__)


class DatabaseWalletService(WalletServiceInterface):
    """
    Increments `app.wallets` on the caller's connection without committing,
    so the credit lands in the same transaction as the caller's other writes.
    """

    def __init__(self, repository: WalletRepository):
        self.repository = repository

    def credit(self, user_id: int, amount_minor_units: int, reason: str,
               metadata: dict) -> WalletCredit:
        if not isinstance(amount_minor_units,
                          int) or amount_minor_units <= 0:
            raise InvalidCreditAmountException(amount_minor_units)

        balance = self.repository.increment_balance(user_id,
                                                    amount_minor_units)
        if balance is None:
            raise WalletNotFoundException(user_id)

        logger.info("Wallet credited",
                    extra={
                        "user_id": user_id,
                        "amount_minor_units": amount_minor_units,
                        "balance_minor_units": balance,
                        "reason": reason,
                        "metadata": metadata,
                    })
        return WalletCredit(user_id, amount_minor_units, balance)


class DatabaseLedger(LedgerInterface):

    def __init__(self, repository: WalletRepository):
        self.repository = repository

    def create(self, user_id: int, amount_minor_units: int, reference: str,
               description: str, metadata: dict) -> LedgerTransaction:
        entry = LedgerTransaction()
        entry.user_id = user_id
        entry.amount_minor_units = amount_minor_units
        entry.reference = reference
        entry.type = LedgerTransactionType.CREDIT
        entry.description = description
        entry.metadata = metadata
        self.repository.persist(entry)
        return entry
