from typing import Optional

from referral_engine.data_access.repository import Repository, OnConflict
from referral_engine.stats.models import UserReferralStats


class StatsRepository(Repository):

    def find_stats(self, user_id: int) -> Optional[UserReferralStats]:
        return self.find_one(UserReferralStats, {"user_id": user_id})

    def get_for_update(self, user_id: int) -> UserReferralStats:
        """Returns the user's stats row locked until the end of the transaction."""
        stats = self.find_one(UserReferralStats, {"user_id": user_id},
                              for_update=True)
        if stats:
            return stats

        self.persist(UserReferralStats(user_id), on_conflict=OnConflict.IGNORE)
        return self.find_one(UserReferralStats, {"user_id": user_id},
                             for_update=True)
