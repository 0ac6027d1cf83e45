from contextlib import AbstractContextManager

from psycopg2._psycopg import connection
from functools import cached_property

from referral_engine.earnings.calculator import EarningsCalculator
from referral_engine.earnings.config import CommissionSchedule
from referral_engine.earnings.repository import EarningsRepository
from referral_engine.payouts.processor import PayoutBatchProcessor
from referral_engine.payouts.repository import PayoutRepository
from referral_engine.referrals.chain_builder import ChainBuilder
from referral_engine.referrals.fraud_guard import FraudGuard, FraudPolicy
from referral_engine.referrals.invite_delivery import InviteDeliveryInterface, LoggingInviteDelivery
from referral_engine.referrals.repository import ReferralRepository
from referral_engine.referrals.service import ReferralService
from referral_engine.services.notification import NotificationService
from referral_engine.services.sendgrid import SendGridService
from referral_engine.stats.aggregator import StatsAggregator
from referral_engine.stats.repository import StatsRepository
from referral_engine.user_directory import UserDirectoryInterface, DatabaseUserDirectory
from referral_engine.utils import db_connect
from referral_engine.wallet.interfaces import WalletServiceInterface, LedgerInterface
from referral_engine.wallet.repository import WalletRepository
from referral_engine.wallet.service import DatabaseWalletService, DatabaseLedger


class ContextContainer(AbstractContextManager):
    """
    Wires the engine on a single database connection. Every repository shares
    it, so a service's commit covers the writes of all its collaborators.
    """
    _db_conn = None

    def __enter__(self):
        # fail fast on a missing or invalid schedule
        _ = self.commission_schedule
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        if self._db_conn:
            self._db_conn.commit()
            self._db_conn.close()

    @property
    def db_conn(self) -> connection:
        if not self._db_conn:
            self._db_conn = db_connect()

        return self._db_conn

    # config

    @cached_property
    def commission_schedule(self) -> CommissionSchedule:
        return CommissionSchedule.from_env()

    @cached_property
    def fraud_policy(self) -> FraudPolicy:
        return FraudPolicy.from_env()

    # repositories

    @cached_property
    def referral_repository(self) -> ReferralRepository:
        return ReferralRepository(self.db_conn)

    @cached_property
    def earnings_repository(self) -> EarningsRepository:
        return EarningsRepository(self.db_conn)

    @cached_property
    def stats_repository(self) -> StatsRepository:
        return StatsRepository(self.db_conn)

    @cached_property
    def payout_repository(self) -> PayoutRepository:
        return PayoutRepository(self.db_conn)

    @cached_property
    def wallet_repository(self) -> WalletRepository:
        return WalletRepository(self.db_conn)

    # collaborators

    @cached_property
    def user_directory(self) -> UserDirectoryInterface:
        return DatabaseUserDirectory(self.referral_repository)

    @cached_property
    def wallet_service(self) -> WalletServiceInterface:
        return DatabaseWalletService(self.wallet_repository)

    @cached_property
    def ledger(self) -> LedgerInterface:
        return DatabaseLedger(self.wallet_repository)

    @cached_property
    def invite_delivery(self) -> InviteDeliveryInterface:
        return LoggingInviteDelivery()

    @cached_property
    def sendgrid_service(self) -> SendGridService:
        return SendGridService()

    @cached_property
    def notification_service(self) -> NotificationService:
        return NotificationService(self.sendgrid_service)

    # referrals

    @cached_property
    def stats_aggregator(self) -> StatsAggregator:
        return StatsAggregator(self.stats_repository)

    @cached_property
    def fraud_guard(self) -> FraudGuard:
        return FraudGuard(self.user_directory, self.referral_repository,
                          self.fraud_policy)

    @cached_property
    def chain_builder(self) -> ChainBuilder:
        return ChainBuilder(self.referral_repository, self.stats_aggregator,
                            self.commission_schedule)

    @cached_property
    def referral_service(self) -> ReferralService:
        return ReferralService(self.referral_repository,
                               self.earnings_repository, self.fraud_guard,
                               self.chain_builder, self.stats_aggregator,
                               self.invite_delivery, self.user_directory)

    # earnings and payouts

    @cached_property
    def earnings_calculator(self) -> EarningsCalculator:
        return EarningsCalculator(self.referral_repository,
                                  self.earnings_repository,
                                  self.stats_aggregator,
                                  self.commission_schedule)

    @cached_property
    def payout_batch_processor(self) -> PayoutBatchProcessor:
        return PayoutBatchProcessor(self.payout_repository,
                                    self.earnings_repository,
                                    self.wallet_service, self.ledger,
                                    self.stats_aggregator,
                                    self.notification_service)
