from typing import List, Dict, Any

from referral_engine.data_access.repository import Repository, OnConflict
from referral_engine.earnings.models import Earning, EarningStatus


class EarningsRepository(Repository):

    def insert_earnings(self, earnings: List[Earning]) -> List[Earning]:
        """
        Inserts earnings skipping those already recorded for the same
        (transaction_id, level, earner_user_id). Returns the inserted ones.
        """
        if not earnings:
            return []
        return self.persist(earnings, on_conflict=OnConflict.IGNORE)

    def get_month_accumulated(self, earner_user_id: int, level: int,
                              month_key: str) -> int:
        query = """
            select coalesce(sum(amount_minor_units), 0)
            from app.referral_earnings
            where earner_user_id = %(earner_user_id)s
              and level = %(level)s
              and month_key = %(month_key)s"""

        with self.db_conn.cursor() as cursor:
            cursor.execute(
                query, {
                    "earner_user_id": earner_user_id,
                    "level": level,
                    "month_key": month_key,
                })
            return int(cursor.fetchone()[0])

    def find_transaction_earnings(self, transaction_id: str) -> List[Earning]:
        return self.find_all(Earning, {"transaction_id": transaction_id},
                             [("level", "ASC")])

    def find_pending_earnings(self, user_id: int) -> List[Earning]:
        return self.find_all(Earning, {
            "earner_user_id": user_id,
            "status": EarningStatus.PENDING.value,
        }, [("created_at", "ASC"), ("id", "ASC")])

    def find_month_earnings(self, user_id: int,
                            month_key: str) -> List[Earning]:
        return self.find_all(Earning, {
            "earner_user_id": user_id,
            "month_key": month_key,
        }, [("created_at", "ASC"), ("id", "ASC")])

    def get_earnings_summary(self, user_id: int) -> Dict[str, Dict[str, Any]]:
        query = """
            select status,
                   count(*)                as earnings_count,
                   sum(amount_minor_units) as amount_minor_units
            from app.referral_earnings
            where earner_user_id = %(user_id)s
            group by status"""

        summary = {
            status.value: {
                "earnings_count": 0,
                "amount_minor_units": 0
            }
            for status in EarningStatus
        }
        with self.db_conn.cursor() as cursor:
            cursor.execute(query, {"user_id": user_id})
            for status, earnings_count, amount in cursor.fetchall():
                summary[status] = {
                    "earnings_count": int(earnings_count),
                    "amount_minor_units": int(amount or 0),
                }

        return summary
