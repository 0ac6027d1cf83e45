from abc import ABC, abstractmethod

from referral_engine.wallet.models import LedgerTransaction, WalletCredit


class WalletServiceInterface(ABC):

    @abstractmethod
    def credit(self, user_id: int, amount_minor_units: int, reason: str,
               metadata: dict) -> WalletCredit:
        """
        Credit the user's wallet once. Raises on failure; the caller decides
        whether and when to retry.
        """


class LedgerInterface(ABC):

    @abstractmethod
    def create(self, user_id: int, amount_minor_units: int, reference: str,
               description: str, metadata: dict) -> LedgerTransaction:
        pass
