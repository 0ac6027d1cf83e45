import datetime
from typing import List, Optional, Dict

from psycopg2.extras import RealDictCursor

from referral_engine.data_access.repository import Repository, OnConflict
from referral_engine.earnings.models import Earning
from referral_engine.payouts.models import PayoutBatch, PayoutBatchStatus, LEDGER_REFERENCE_PREFIX
from referral_engine.wallet.models import LedgerTransaction


class PayoutRepository(Repository):

    def find_batch(self, batch_id: str) -> Optional[PayoutBatch]:
        return self.find_one(PayoutBatch, {"batch_id": batch_id})

    def get_or_create_batch(self, batch_id: str,
                            payout_date: datetime.date) -> PayoutBatch:
        batch = self.find_batch(batch_id)
        if batch:
            return batch

        batch = PayoutBatch()
        batch.batch_id = batch_id
        batch.payout_date = payout_date
        batch.status = PayoutBatchStatus.PROCESSING
        batch.failed_users = []
        self.persist(batch, on_conflict=OnConflict.IGNORE)
        return self.find_batch(batch_id)

    def claim_pending_earnings(
            self, batch_id: str, now: datetime.datetime,
            stale_before: datetime.datetime) -> List[Earning]:
        """
        Atomically reserves every pending earning for the batch. Earnings
        claimed by another batch are skipped unless that claim is stale.
        """
        query = """
            update app.referral_earnings
            set claimed_by_batch_id = %(batch_id)s,
                claimed_at          = %(now)s
            where status = 'pending'
              and (claimed_by_batch_id is null
                or claimed_by_batch_id = %(batch_id)s
                or claimed_at < %(stale_before)s)
            returning *"""

        with self.db_conn.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute(query, {
                "batch_id": batch_id,
                "now": now,
                "stale_before": stale_before,
            })
            rows = cursor.fetchall()

        return [Earning().set_from_dict(row) for row in rows]

    def release_claims(self, batch_id: str, earning_ids: List[int]) -> int:
        query = """
            update app.referral_earnings
            set claimed_by_batch_id = null,
                claimed_at          = null
            where id = any (%(earning_ids)s)
              and claimed_by_batch_id = %(batch_id)s
              and status = 'pending'"""

        with self.db_conn.cursor() as cursor:
            cursor.execute(query, {
                "batch_id": batch_id,
                "earning_ids": earning_ids,
            })
            return cursor.rowcount

    def mark_earnings_paid(self, batch_id: str, earning_ids: List[int],
                           now: datetime.datetime) -> int:
        query = """
            update app.referral_earnings
            set status          = 'paid',
                payout_batch_id = %(batch_id)s,
                paid_at         = %(now)s
            where id = any (%(earning_ids)s)
              and claimed_by_batch_id = %(batch_id)s
              and status = 'pending'"""

        with self.db_conn.cursor() as cursor:
            cursor.execute(query, {
                "batch_id": batch_id,
                "earning_ids": earning_ids,
                "now": now,
            })
            return cursor.rowcount

    def get_batch_totals(self, batch_id: str) -> Dict[str, int]:
        query = """
            select count(distinct earner_user_id),
                   count(*),
                   coalesce(sum(amount_minor_units), 0)
            from app.referral_earnings
            where payout_batch_id = %(batch_id)s
              and status = 'paid'"""

        with self.db_conn.cursor() as cursor:
            cursor.execute(query, {"batch_id": batch_id})
            total_users, total_earnings_count, total_amount = cursor.fetchone()

        return {
            "total_users": int(total_users),
            "total_earnings_count": int(total_earnings_count),
            "total_amount_minor_units": int(total_amount),
        }

    def find_user_payouts(self, user_id: int,
                          limit: int) -> List[LedgerTransaction]:
        query = """
            select *
            from app.ledger_transactions
            where user_id = %(user_id)s
              and reference like %(reference_prefix)s
            order by created_at desc, id desc
            limit %(limit)s"""

        with self.db_conn.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute(
                query, {
                    "user_id": user_id,
                    "reference_prefix":
                    LEDGER_REFERENCE_PREFIX.replace("_", "\\_") + "%",
                    "limit": limit,
                })
            return [
                LedgerTransaction().set_from_dict(row)
                for row in cursor.fetchall()
            ]
