"""
Daily referral payout.

Runs for one payout date at a time under a PostgreSQL advisory lock:

1. get-or-create the batch row, a completed batch is returned as is;
2. claim every pending earning for the batch in one UPDATE ... RETURNING;
3. per earner, in one transaction: credit the wallet, append a ledger entry,
   flip the claimed earnings to paid and update stats;
4. a failing earner is rolled back, its claims released and recorded on the
   batch, the remaining earners are still processed.
"""
import datetime
import itertools
import os
import time
from operator import attrgetter
from typing import Callable, List

from referral_engine.data_access.db_lock import LockAcquisitionTimeout
from referral_engine.data_access.pessimistic_lock import AbstractPessimisticLockingFunction
from referral_engine.earnings.models import Earning
from referral_engine.earnings.repository import EarningsRepository
from referral_engine.payouts.exceptions import PayoutBatchException, ClaimLostException
from referral_engine.payouts.models import PayoutBatch, PayoutBatchStatus, BatchResult, FailedUser, \
    make_batch_id, make_ledger_reference
from referral_engine.payouts.repository import PayoutRepository
from referral_engine.services.notification import NotificationService
from referral_engine.stats.aggregator import StatsAggregator
from referral_engine.utils import get_logger
from referral_engine.wallet.interfaces import WalletServiceInterface, LedgerInterface
from referral_engine.wallet.models import LedgerTransaction

logger = get_logger(__name__)

PAYOUT_BATCH_TIMEOUT_SECONDS = int(
    os.getenv("PAYOUT_BATCH_TIMEOUT_SECONDS", "1800"))
PAYOUT_CLAIM_TIMEOUT_SECONDS = int(
    os.getenv("PAYOUT_CLAIM_TIMEOUT_SECONDS", "3600"))

BATCH_TIMEOUT_REASON = "batch timeout"
PAYOUT_REASON = "Referral earnings payout"


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class RunPayoutBatch(AbstractPessimisticLockingFunction):
    repo: PayoutRepository

    def __init__(self, repo: PayoutRepository,
                 processor: "PayoutBatchProcessor", batch_id: str,
                 payout_date: datetime.date):
        super().__init__(repo)
        self.processor = processor
        self.batch_id = batch_id
        self.payout_date = payout_date

    def execute(self, max_tries: int = 3) -> BatchResult:
        return super().execute(max_tries)

    def load_version(self) -> PayoutBatch:
        return self.repo.get_or_create_batch(self.batch_id, self.payout_date)

    def _do(self, batch: PayoutBatch) -> BatchResult:
        return self.processor.process_batch(batch)


class PayoutBatchProcessor:

    def __init__(self,
                 repository: PayoutRepository,
                 earnings_repository: EarningsRepository,
                 wallet_service: WalletServiceInterface,
                 ledger: LedgerInterface,
                 stats_aggregator: StatsAggregator,
                 notification_service: NotificationService,
                 timeout_seconds: float = PAYOUT_BATCH_TIMEOUT_SECONDS,
                 claim_timeout_seconds: float = PAYOUT_CLAIM_TIMEOUT_SECONDS,
                 clock: Callable[[], datetime.datetime] = _utcnow,
                 timer: Callable[[], float] = time.monotonic):
        self.repository = repository
        self.earnings_repository = earnings_repository
        self.wallet_service = wallet_service
        self.ledger = ledger
        self.stats_aggregator = stats_aggregator
        self.notification_service = notification_service
        self.timeout_seconds = timeout_seconds
        self.claim_timeout_seconds = claim_timeout_seconds
        self.clock = clock
        self.timer = timer

    def run_daily_batch(self,
                        as_of_date: datetime.date = None) -> BatchResult:
        as_of_date = as_of_date or self.clock().date()
        batch_id = make_batch_id(as_of_date)
        logger.info("Payout batch started", extra={"batch_id": batch_id})

        try:
            return RunPayoutBatch(self.repository, self, batch_id,
                                  as_of_date).execute()
        except LockAcquisitionTimeout:
            logger.warning("Payout batch is running in another process",
                           extra={"batch_id": batch_id})
            self.repository.rollback()
            batch = self.repository.find_batch(batch_id)
            if batch:
                return batch.to_result()
            return BatchResult(batch_id, as_of_date,
                               PayoutBatchStatus.PROCESSING)
        except PayoutBatchException:
            raise
        except Exception as e:
            logger.exception(e, extra={"batch_id": batch_id})
            self._notify_batch_failed(batch_id, e)
            raise e

    def process_batch(self, batch: PayoutBatch) -> BatchResult:
        if batch.is_completed:
            logger.info("Payout batch already completed",
                        extra={"batch_id": batch.batch_id})
            return batch.to_result(already_completed=True)

        deadline = self.timer() + self.timeout_seconds
        claimed = self._claim(batch)

        failed_users = []
        timed_out = False
        groups = self._group_by_earner(claimed)
        for index, (user_id, earnings) in enumerate(groups):
            if self.timer() > deadline:
                timed_out = True
                for skipped_user_id, skipped_earnings in groups[index:]:
                    self._release(batch, skipped_user_id, skipped_earnings)
                    failed_users.append(
                        self._failed_user(skipped_user_id,
                                          BATCH_TIMEOUT_REASON,
                                          skipped_earnings))
                logger.error("Payout batch timed out",
                             extra={
                                 "batch_id": batch.batch_id,
                                 "skipped_users": len(groups) - index,
                             })
                break

            try:
                self._pay_user(batch, user_id, earnings)
            except Exception as e:
                self.repository.rollback()
                logger.exception(e,
                                 extra={
                                     "batch_id": batch.batch_id,
                                     "user_id": user_id,
                                 })
                self._release(batch, user_id, earnings)
                failed_users.append(
                    self._failed_user(user_id,
                                      str(e) or e.__class__.__name__,
                                      earnings))

        return self._complete(batch, failed_users, timed_out).to_result()

    def get_user_payout_history(self,
                                user_id: int,
                                limit: int = 20) -> List[LedgerTransaction]:
        return self.repository.find_user_payouts(user_id, limit)

    def get_pending_earnings(self, user_id: int) -> dict:
        earnings = self.earnings_repository.find_pending_earnings(user_id)
        return {
            "user_id": user_id,
            "earnings_count": len(earnings),
            "amount_minor_units": sum(i.amount_minor_units for i in earnings),
            "earnings": earnings,
        }

    def _claim(self, batch: PayoutBatch) -> List[Earning]:
        now = self.clock()
        stale_before = now - datetime.timedelta(
            seconds=self.claim_timeout_seconds)

        try:
            batch.status = PayoutBatchStatus.PROCESSING
            batch.started_at = now
            batch.error = None
            self.repository.persist(batch)

            claimed = self.repository.claim_pending_earnings(
                batch.batch_id, now, stale_before)
            self.repository.commit()
        except Exception as e:
            self.repository.rollback()
            self._fail(batch, e)
            raise PayoutBatchException(batch.batch_id, str(e)) from e

        logger.info("Earnings claimed",
                    extra={
                        "batch_id": batch.batch_id,
                        "earnings_count": len(claimed),
                    })
        return claimed

    def _pay_user(self, batch: PayoutBatch, user_id: int,
                  earnings: List[Earning]):
        amount = sum(i.amount_minor_units for i in earnings)
        earning_ids = [i.id for i in earnings]
        metadata = {"batch_id": batch.batch_id, "earning_ids": earning_ids}

        self.wallet_service.credit(user_id, amount, PAYOUT_REASON, metadata)
        self.ledger.create(user_id, amount,
                           make_ledger_reference(batch.batch_id, user_id,
                                                 min(earning_ids)),
                           PAYOUT_REASON, metadata)

        updated = self.repository.mark_earnings_paid(batch.batch_id,
                                                     earning_ids, self.clock())
        if updated != len(earning_ids):
            raise ClaimLostException(batch.batch_id, user_id,
                                     len(earning_ids), updated)

        self.stats_aggregator.on_earnings_paid(user_id, earnings)
        self.repository.commit()

        logger.info("User paid",
                    extra={
                        "batch_id": batch.batch_id,
                        "user_id": user_id,
                        "amount_minor_units": amount,
                        "earning_ids": earning_ids,
                    })

    def _release(self, batch: PayoutBatch, user_id: int,
                 earnings: List[Earning]):
        # an unreleased claim goes stale and is reclaimed by a later run
        try:
            self.repository.release_claims(batch.batch_id,
                                           [i.id for i in earnings])
            self.repository.commit()
        except Exception as e:
            self.repository.rollback()
            logger.exception(e,
                             extra={
                                 "batch_id": batch.batch_id,
                                 "user_id": user_id,
                             })

    def _complete(self, batch: PayoutBatch, failed_users: List[FailedUser],
                  timed_out: bool) -> PayoutBatch:
        totals = self.repository.get_batch_totals(batch.batch_id)

        batch.status = PayoutBatchStatus.COMPLETED
        batch.total_users = totals["total_users"]
        batch.total_earnings_count = totals["total_earnings_count"]
        batch.total_amount_minor_units = totals["total_amount_minor_units"]
        batch.failed_users = [i.to_dict() for i in failed_users]
        batch.message = self._make_message(batch, failed_users, timed_out)
        batch.completed_at = self.clock()
        self.repository.persist(batch)
        self.repository.commit()

        logger.info("Payout batch completed",
                    extra={
                        "batch_id": batch.batch_id,
                        "total_users": batch.total_users,
                        "total_amount_minor_units":
                        batch.total_amount_minor_units,
                        "failed_users": batch.failed_users,
                    })

        if failed_users:
            try:
                self.notification_service.notify_payout_failures(batch)
            except Exception as e:
                logger.exception(e, extra={"batch_id": batch.batch_id})

        return batch

    def _fail(self, batch: PayoutBatch, error: Exception):
        logger.exception(error, extra={"batch_id": batch.batch_id})
        try:
            batch.status = PayoutBatchStatus.FAILED
            batch.error = str(error)
            self.repository.persist(batch)
            self.repository.commit()
        except Exception as e:
            self.repository.rollback()
            logger.exception(e, extra={"batch_id": batch.batch_id})

        self._notify_batch_failed(batch.batch_id, error)

    def _notify_batch_failed(self, batch_id: str, error: Exception):
        try:
            self.notification_service.notify_payout_batch_failed(
                batch_id, error)
        except Exception as e:
            logger.exception(e, extra={"batch_id": batch_id})

    @staticmethod
    def _make_message(batch: PayoutBatch, failed_users: List[FailedUser],
                      timed_out: bool) -> str:
        message = "Paid %d users %d minor units from %d earnings, %d users failed" % (
            batch.total_users, batch.total_amount_minor_units,
            batch.total_earnings_count, len(failed_users))
        if timed_out:
            message += "; batch timed out, remaining users were skipped"
        return message

    @staticmethod
    def _failed_user(user_id: int, reason: str,
                     earnings: List[Earning]) -> FailedUser:
        return FailedUser(user_id, reason, len(earnings),
                          sum(i.amount_minor_units for i in earnings))

    @staticmethod
    def _group_by_earner(earnings: List[Earning]):
        key = attrgetter("earner_user_id")
        return [(user_id, list(group)) for user_id, group in itertools.groupby(
            sorted(earnings, key=lambda i: (i.earner_user_id, i.id)), key)]
