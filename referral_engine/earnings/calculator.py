import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import List

from referral_engine.earnings.config import CommissionSchedule, REFERRAL_MIN_REVENUE_MINOR_UNITS
from referral_engine.earnings.models import Earning, EarningStatus
from referral_engine.earnings.repository import EarningsRepository
from referral_engine.referrals.models import ReferralChain
from referral_engine.referrals.repository import ReferralRepository
from referral_engine.stats.aggregator import StatsAggregator
from referral_engine.utils import get_logger, month_key

logger = get_logger(__name__)


class RevenueTransaction:

    def __init__(self,
                 id: str,
                 user_id: int,
                 net_revenue_minor_units: int,
                 type: str = None,
                 completed_at: datetime.datetime = None):
        self.id = id
        self.user_id = user_id
        self.net_revenue_minor_units = net_revenue_minor_units
        self.type = type
        self.completed_at = completed_at


class EarningsPreview:

    def __init__(self, user_id: int, revenue_minor_units: int,
                 earnings: List[Earning]):
        self.user_id = user_id
        self.revenue_minor_units = revenue_minor_units
        self.earnings = earnings

    @property
    def total_minor_units(self) -> int:
        return sum(i.amount_minor_units for i in self.earnings)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "revenue_minor_units": self.revenue_minor_units,
            "total_minor_units": self.total_minor_units,
            "levels": [{
                "level": i.level,
                "earner_user_id": i.earner_user_id,
                "percentage": str(i.percentage),
                "amount_minor_units": i.amount_minor_units,
                "capped": i.capped,
            } for i in self.earnings],
        }


def commission_amount(revenue_minor_units: int, percentage: Decimal) -> int:
    exact = Decimal(revenue_minor_units) * percentage / Decimal(100)
    amount = int(exact.quantize(Decimal(1), rounding=ROUND_HALF_UP))
    if amount == 0 and exact > 0:
        return 1
    return amount


def _is_valid_revenue(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class EarningsCalculator:
    """
    Turns a completed revenue-bearing transaction into commission records for
    the source user's upline. Never raises: failures are logged and produce no
    earnings.
    """

    def __init__(self,
                 referral_repository: ReferralRepository,
                 earnings_repository: EarningsRepository,
                 stats_aggregator: StatsAggregator,
                 schedule: CommissionSchedule,
                 min_revenue_minor_units: int = REFERRAL_MIN_REVENUE_MINOR_UNITS):
        self.referral_repository = referral_repository
        self.earnings_repository = earnings_repository
        self.stats_aggregator = stats_aggregator
        self.schedule = schedule
        self.min_revenue_minor_units = min_revenue_minor_units

    def calculate(self, transaction: RevenueTransaction) -> List[Earning]:
        revenue = transaction.net_revenue_minor_units
        if not _is_valid_revenue(
                revenue) or revenue < self.min_revenue_minor_units:
            logger.info("Transaction skipped: revenue below minimum",
                        extra={
                            "transaction_id": transaction.id,
                            "net_revenue_minor_units": revenue,
                        })
            return []

        try:
            chain = self.referral_repository.get_chain(transaction.user_id)
            if not chain or not chain.depth:
                return []

            # earner stats rows double as the per-earner cap lock
            for earner_user_id in sorted(
                    set(ancestor_id for _, ancestor_id in chain.levels())):
                self.stats_aggregator.lock(earner_user_id)

            earnings = self._make_earnings(transaction, chain)
            created = self.earnings_repository.insert_earnings(earnings)
            for earning in created:
                self.stats_aggregator.on_earning_created(earning)
            self.earnings_repository.commit()
        except Exception as e:
            self.earnings_repository.rollback()
            logger.exception(e,
                             extra={
                                 "transaction_id": transaction.id,
                                 "user_id": transaction.user_id,
                             })
            return []

        logger.info("Referral earnings created",
                    extra={
                        "transaction_id": transaction.id,
                        "user_id": transaction.user_id,
                        "earnings_count": len(created),
                        "duplicates_count": len(earnings) - len(created),
                        "amount_minor_units":
                        sum(i.amount_minor_units for i in created),
                    })
        return created

    def preview(self, user_id: int,
                revenue_minor_units: int) -> EarningsPreview:
        chain = self.referral_repository.get_chain(user_id)
        if not chain or not _is_valid_revenue(
                revenue_minor_units
        ) or revenue_minor_units < self.min_revenue_minor_units:
            return EarningsPreview(user_id, revenue_minor_units, [])

        transaction = RevenueTransaction(None, user_id, revenue_minor_units)
        return EarningsPreview(user_id, revenue_minor_units,
                               self._make_earnings(transaction, chain))

    def list_month_earnings(self,
                            user_id: int,
                            month: str = None) -> List[Earning]:
        return self.earnings_repository.find_month_earnings(
            user_id, month or month_key())

    def _make_earnings(self, transaction: RevenueTransaction,
                       chain: ReferralChain) -> List[Earning]:
        revenue = transaction.net_revenue_minor_units
        earning_month_key = month_key(transaction.completed_at)
        undistributed = revenue

        earnings = []
        for level, earner_user_id in chain.levels():
            commission_level = self.schedule.get_level(level)
            if not commission_level or commission_level.percentage <= 0:
                continue
            if undistributed <= 0:
                break

            original_amount = commission_amount(revenue,
                                                commission_level.percentage)
            amount = min(original_amount, undistributed)
            capped = False

            if commission_level.is_capped:
                available = self._get_available_cap(
                    earner_user_id, level,
                    commission_level.monthly_cap_minor_units,
                    earning_month_key)
                if available <= 0:
                    logger.info("Monthly cap reached",
                                extra={
                                    "earner_user_id": earner_user_id,
                                    "level": level,
                                    "month_key": earning_month_key,
                                    "transaction_id": transaction.id,
                                })
                    continue
                if amount > available:
                    amount = available
                    capped = True

            earning = Earning()
            earning.earner_user_id = earner_user_id
            earning.source_user_id = transaction.user_id
            earning.transaction_id = transaction.id
            earning.transaction_type = transaction.type
            earning.level = level
            earning.percentage = commission_level.percentage
            earning.revenue_minor_units = revenue
            earning.amount_minor_units = amount
            earning.capped = capped
            earning.original_amount_minor_units = original_amount if capped else None
            earning.status = EarningStatus.PENDING
            earning.month_key = earning_month_key
            earnings.append(earning)

            undistributed -= amount

        return earnings

    def _get_available_cap(self, earner_user_id: int, level: int,
                           cap: int, earning_month_key: str) -> int:
        accumulated = self.earnings_repository.get_month_accumulated(
            earner_user_id, level, earning_month_key)
        return max(0, cap - accumulated)
