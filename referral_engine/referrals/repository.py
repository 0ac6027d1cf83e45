import datetime
from typing import Optional, Iterable, Dict

from referral_engine.data_access.operators import OperatorGte, OperatorIn, OperatorLt
from referral_engine.data_access.repository import Repository, OnConflict
from referral_engine.referrals.models import ReferralChain, Invite, InviteStatus, ReferralCode


class ReferralRepository(Repository):

    # chains

    def get_chain(self, user_id: int) -> Optional[ReferralChain]:
        return self.find_one(ReferralChain, {"user_id": user_id})

    def insert_chain(self, chain: ReferralChain) -> bool:
        """Inserts the chain unless the user already has one. Returns whether it was inserted."""
        return bool(self.persist(chain, on_conflict=OnConflict.IGNORE))

    def get_network_level_counts(self, user_id: int) -> Dict[int, int]:
        query = """
            select ancestor.level, count(*)
            from app.referral_chains
                     join lateral jsonb_array_elements_text(ancestor_ids)
                with ordinality as ancestor(ancestor_id, level) on true
            where ancestor.ancestor_id = %(user_id)s::text
            group by ancestor.level"""

        with self.db_conn.cursor() as cursor:
            cursor.execute(query, {"user_id": user_id})
            return {int(level): int(count) for level, count in cursor}

    # invites

    def get_invite_by_code(self,
                           code: str,
                           for_update: bool = False) -> Optional[Invite]:
        return self.find_one(Invite, {"code": code}, for_update=for_update)

    def find_signed_up_invite(self, invitee_user_id: int) -> Optional[Invite]:
        return self.find_one(
            Invite, {
                "invitee_user_id": invitee_user_id,
                "status": InviteStatus.SIGNED_UP.value,
            },
            for_update=True)

    def find_invite_for_invitee(self,
                                invitee_user_id: int) -> Optional[Invite]:
        return self.find_one(
            Invite, {
                "invitee_user_id": invitee_user_id,
                "status": OperatorIn([
                    InviteStatus.SIGNED_UP.value,
                    InviteStatus.ACTIVATED.value,
                ]),
            })

    def count_invites_since(self, inviter_user_id: int,
                            since: datetime.datetime) -> int:
        return self.count(Invite, {
            "inviter_user_id": inviter_user_id,
            "invited_at": OperatorGte(since),
        })

    def has_open_invite(self, inviter_user_id: int, phone_number: str) -> bool:
        return self.count(
            Invite, {
                "inviter_user_id": inviter_user_id,
                "invitee_phone_number": phone_number,
                "status": OperatorIn([
                    InviteStatus.PENDING.value,
                    InviteStatus.SIGNED_UP.value,
                    InviteStatus.ACTIVATED.value,
                ]),
            }) > 0

    def iterate_expirable_invites(
            self, invited_before: datetime.datetime) -> Iterable[Invite]:
        yield from self.iterate_all(
            Invite, {
                "status": OperatorIn([
                    InviteStatus.PENDING.value,
                    InviteStatus.SIGNED_UP.value,
                ]),
                "invited_at": OperatorLt(invited_before),
            }, [("id", "ASC")])

    def code_exists(self, code: str) -> bool:
        return self.count(Invite, {"code": code}) > 0 or self.count(
            ReferralCode, {"code": code}) > 0

    # personal codes

    def get_referral_code(self, user_id: int) -> Optional[ReferralCode]:
        return self.find_one(ReferralCode, {"user_id": user_id})

    def find_referral_code(self, code: str) -> Optional[ReferralCode]:
        return self.find_one(ReferralCode, {"code": code})

    def insert_referral_code(self, referral_code: ReferralCode) -> bool:
        return bool(self.persist(referral_code,
                                 on_conflict=OnConflict.IGNORE))
