"""
Denormalised referral counters for dashboards.

Every mutation happens inside the caller's transaction on a row locked with
`SELECT ... FOR UPDATE`; nothing here commits. Month fields are reset lazily
whenever the stored month key differs from the current one.
"""
import datetime
from typing import Callable, Iterable

from referral_engine.earnings.models import Earning
from referral_engine.referrals.models import ReferralChain
from referral_engine.stats.models import UserReferralStats
from referral_engine.stats.repository import StatsRepository
from referral_engine.utils import get_logger, month_key

logger = get_logger(__name__)


class StatsAggregator:

    def __init__(self,
                 repository: StatsRepository,
                 clock: Callable[[], datetime.datetime] = None):
        self.repository = repository
        self.clock = clock or (
            lambda: datetime.datetime.now(datetime.timezone.utc))

    def get_stats(self, user_id: int,
                  current_month_key: str = None) -> UserReferralStats:
        stats = self.repository.find_stats(user_id) or UserReferralStats(
            user_id)
        stats.ensure_month(current_month_key or self._current_month_key())
        return stats

    def lock(self, user_id: int):
        self.repository.get_for_update(user_id)

    def on_invite_sent(self, inviter_user_id: int):
        self._update(inviter_user_id, _increment("total_invites_sent"))

    def on_referral_activated(self, inviter_user_id: int):
        self._update(inviter_user_id, _increment("active_referrals"))

    def on_chain_created(self, chain: ReferralChain):
        for level, ancestor_id in chain.levels():

            def apply(stats: UserReferralStats, level=level):
                stats.increment_level_count(level)
                if level == 1:
                    stats.total_referrals += 1

            self._update(ancestor_id, apply)

    def on_earning_created(self, earning: Earning):

        def apply(stats: UserReferralStats):
            stats.total_earned_minor_units += earning.amount_minor_units
            stats.total_pending_minor_units += earning.amount_minor_units
            if earning.month_key == stats.month_key:
                stats.month_earned_minor_units += earning.amount_minor_units
                stats.add_level_month_amount(earning.level,
                                             earning.amount_minor_units)

        self._update(earning.earner_user_id, apply)

    def on_earnings_paid(self, user_id: int, earnings: Iterable[Earning]):
        amount = sum(i.amount_minor_units for i in earnings)
        if not amount:
            return

        def apply(stats: UserReferralStats):
            stats.total_paid_minor_units += amount
            stats.total_pending_minor_units = max(
                0, stats.total_pending_minor_units - amount)
            stats.month_paid_minor_units += amount

        self._update(user_id, apply)

    def _update(self, user_id: int, apply: Callable[[UserReferralStats],
                                                    None]):
        stats = self.repository.get_for_update(user_id)
        stats.ensure_month(self._current_month_key())
        apply(stats)
        self.repository.persist(stats)
        logger.debug("Referral stats updated",
                     extra={
                         "user_id": user_id,
                         "stats": stats.to_dict(),
                     })

    def _current_month_key(self) -> str:
        return month_key(self.clock())


def _increment(field: str):

    def apply(stats: UserReferralStats):
        setattr(stats, field, getattr(stats, field) + 1)

    return apply
