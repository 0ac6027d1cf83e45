from referral_engine.earnings.config import CommissionSchedule
from referral_engine.exceptions import InvalidReferralException
from referral_engine.referrals.models import ReferralChain
from referral_engine.referrals.repository import ReferralRepository
from referral_engine.stats.aggregator import StatsAggregator
from referral_engine.utils import get_logger

logger = get_logger(__name__)


class ChainBuilder:
    """
    Creates the immutable upline snapshot of a user by shifting the inviter's
    own chain one level down.
    """

    def __init__(self, repository: ReferralRepository,
                 stats_aggregator: StatsAggregator,
                 schedule: CommissionSchedule):
        self.repository = repository
        self.stats_aggregator = stats_aggregator
        self.schedule = schedule

    def build(self, new_user_id: int, inviter_id: int) -> ReferralChain:
        if new_user_id == inviter_id:
            raise InvalidReferralException(
                f"User {new_user_id} can not refer themselves.")

        existing_chain = self.repository.get_chain(new_user_id)
        if existing_chain:
            return existing_chain

        chain = self._make_chain(new_user_id, inviter_id)

        try:
            created = self.repository.insert_chain(chain)
            self.repository.commit()
        except Exception:
            self.repository.rollback()
            raise

        if not created:
            # a concurrent build won, keep its snapshot
            return self.repository.get_chain(new_user_id)

        logger.info("Referral chain created",
                    extra={
                        "user_id": new_user_id,
                        "inviter_id": inviter_id,
                        "ancestor_ids": chain.ancestor_ids,
                        "depth": chain.depth,
                    })

        self._increment_level_counters(chain)
        return chain

    def _make_chain(self, new_user_id: int, inviter_id: int) -> ReferralChain:
        max_depth = self.schedule.depth

        inviter_chain = self.repository.get_chain(inviter_id)
        inviter_depth = inviter_chain.depth if inviter_chain else 0
        inherited = inviter_chain.ancestor_ids[:inviter_depth] if inviter_chain else []

        if new_user_id in inherited:
            raise InvalidReferralException(
                f"User {new_user_id} is already in the upline of user {inviter_id}."
            )

        chain = ReferralChain()
        chain.user_id = new_user_id
        chain.ancestor_ids = ([inviter_id] + inherited[:max_depth - 1])
        chain.depth = min(1 + inviter_depth, max_depth)
        return chain

    def _increment_level_counters(self, chain: ReferralChain):
        # counters are dashboard-only, drift is tolerated
        try:
            self.stats_aggregator.on_chain_created(chain)
            self.repository.commit()
        except Exception as e:
            self.repository.rollback()
            logger.exception(e,
                             extra={
                                 "user_id": chain.user_id,
                                 "ancestor_ids": chain.ancestor_ids,
                             })
