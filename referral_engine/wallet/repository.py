from typing import Optional

from referral_engine.data_access.repository import Repository
from referral_engine.wallet.models import Wallet


class WalletRepository(Repository):

    def get_wallet(self, user_id: int) -> Optional[Wallet]:
        return self.find_one(Wallet, {"user_id": user_id})

    def increment_balance(self, user_id: int,
                          amount_minor_units: int) -> Optional[int]:
        query = """
            update app.wallets
            set balance_minor_units = balance_minor_units + %(amount)s,
                updated_at          = now()
            where user_id = %(user_id)s
            returning balance_minor_units"""

        with self.db_conn.cursor() as cursor:
            cursor.execute(query, {
                "user_id": user_id,
                "amount": amount_minor_units,
            })
            row = cursor.fetchone()

        return row[0] if row else None
