import datetime
from typing import Optional

from referral_engine.earnings.repository import EarningsRepository
from referral_engine.exceptions import ReferralEngineException
from referral_engine.referrals.chain_builder import ChainBuilder
from referral_engine.referrals.config import REFERRAL_INVITE_EXPIRY_DAYS, REFERRAL_SHARE_URL_TEMPLATE, \
    CHAIN_POLICY_SIGNUP, chain_policy
from referral_engine.referrals.fraud_guard import FraudGuard
from referral_engine.referrals.invite_delivery import InviteDeliveryInterface
from referral_engine.referrals.models import Invite, InviteStatus, ReferralCode, generate_referral_code, normalize_phone_number
from referral_engine.referrals.repository import ReferralRepository
from referral_engine.results import Ineligible, IneligibilityReason, SystemFailure, InviteCreated, \
    SignupProcessed, ReferralActivated, NothingToActivate
from referral_engine.stats.aggregator import StatsAggregator
from referral_engine.user_directory import UserDirectoryInterface
from referral_engine.utils import get_logger

logger = get_logger(__name__)

MAX_CODE_GENERATION_ATTEMPTS = 10


def _now():
    return datetime.datetime.now(datetime.timezone.utc)


class ReferralService:

    def __init__(self,
                 repository: ReferralRepository,
                 earnings_repository: EarningsRepository,
                 fraud_guard: FraudGuard,
                 chain_builder: ChainBuilder,
                 stats_aggregator: StatsAggregator,
                 invite_delivery: InviteDeliveryInterface,
                 user_directory: UserDirectoryInterface,
                 policy: str = None,
                 invite_expiry_days: int = REFERRAL_INVITE_EXPIRY_DAYS,
                 share_url_template: str = REFERRAL_SHARE_URL_TEMPLATE):
        self.repository = repository
        self.earnings_repository = earnings_repository
        self.fraud_guard = fraud_guard
        self.chain_builder = chain_builder
        self.stats_aggregator = stats_aggregator
        self.invite_delivery = invite_delivery
        self.user_directory = user_directory
        self.policy = chain_policy(policy)
        self.invite_expiry_days = invite_expiry_days
        self.share_url_template = share_url_template

    def get_referral_code(self, user_id: int) -> ReferralCode:
        referral_code = self.repository.get_referral_code(user_id)
        if referral_code:
            return referral_code

        referral_code = ReferralCode()
        referral_code.user_id = user_id
        referral_code.code = self._generate_unique_code()
        self.repository.insert_referral_code(referral_code)
        self.repository.commit()

        # another request may have created the code first
        return self.repository.get_referral_code(user_id)

    def get_share_link(self, user_id: int) -> str:
        code = self.get_referral_code(user_id).code
        return self.share_url_template.format(code=code)

    def send_invite(self,
                    inviter_user_id: int,
                    phone_number: str,
                    language: str = "en",
                    channel: str = "sms",
                    now: datetime.datetime = None):
        now = now or _now()
        phone_number = normalize_phone_number(phone_number)

        try:
            eligibility = self.fraud_guard.check(inviter_user_id,
                                                 phone_number, now)
            if not eligibility.is_success:
                return eligibility

            invite = Invite()
            invite.code = self._generate_unique_code()
            invite.inviter_user_id = inviter_user_id
            invite.invitee_phone_number = phone_number
            invite.language = language
            invite.channel = channel
            invite.status = InviteStatus.PENDING
            invite.invited_at = now
            self.repository.persist(invite)
            self.stats_aggregator.on_invite_sent(inviter_user_id)
            self.repository.commit()
        except Exception as e:
            self.repository.rollback()
            logger.exception(e,
                             extra={
                                 "inviter_user_id": inviter_user_id,
                                 "phone_number": phone_number,
                             })
            return SystemFailure(e)

        logger.info("Invite created",
                    extra={
                        "invite_id": invite.id,
                        "inviter_user_id": inviter_user_id,
                        "code": invite.code,
                    })

        return InviteCreated(invite, self._deliver(invite, now))

    def process_signup(self,
                       new_user_id: int,
                       code: str,
                       now: datetime.datetime = None):
        now = now or _now()

        try:
            invite = self.repository.get_invite_by_code(code, for_update=True)
            if invite is None:
                invite = self._invite_from_referral_code(code, now)
            if invite is None or not invite.can_transition_to(
                    InviteStatus.SIGNED_UP):
                self.repository.rollback()
                return Ineligible(IneligibilityReason.INVALID_REFERRAL_CODE,
                                  {"code": code})

            refusal = self._validate_referral(new_user_id,
                                              invite.inviter_user_id)
            if refusal:
                self.repository.rollback()
                return refusal

            invite.mark_signed_up(new_user_id, now)
            self.repository.persist(invite)
            self.repository.commit()
        except Exception as e:
            self.repository.rollback()
            logger.exception(e,
                             extra={
                                 "user_id": new_user_id,
                                 "code": code
                             })
            return SystemFailure(e)

        logger.info("Referral signup processed",
                    extra={
                        "invite_id": invite.id,
                        "user_id": new_user_id,
                        "inviter_user_id": invite.inviter_user_id,
                    })

        chain = None
        if self.policy == CHAIN_POLICY_SIGNUP:
            chain = self._build_chain(new_user_id, invite.inviter_user_id)

        return SignupProcessed(invite, chain)

    def activate_referral(self, user_id: int, now: datetime.datetime = None):
        now = now or _now()

        try:
            invite = self.repository.find_signed_up_invite(user_id)
            if not invite:
                self.repository.rollback()
                return NothingToActivate()

            invite.mark_activated(now)
            self.repository.persist(invite)
            self.stats_aggregator.on_referral_activated(
                invite.inviter_user_id)
            self.repository.commit()
        except Exception as e:
            self.repository.rollback()
            logger.exception(e, extra={"user_id": user_id})
            return SystemFailure(e)

        logger.info("Referral activated",
                    extra={
                        "invite_id": invite.id,
                        "user_id": user_id,
                        "inviter_user_id": invite.inviter_user_id,
                    })

        # a no-op when the chain was already built at signup
        chain = self._build_chain(user_id, invite.inviter_user_id)
        return ReferralActivated(invite, chain)

    def expire_invites(self, now: datetime.datetime = None) -> int:
        now = now or _now()
        invited_before = now - datetime.timedelta(days=self.invite_expiry_days)

        invites = list(self.repository.iterate_expirable_invites(invited_before))
        for invite in invites:
            invite.mark_expired(now)

        if invites:
            self.repository.persist(invites)
        self.repository.commit()

        logger.info("Invites expired",
                    extra={
                        "invited_before": invited_before.isoformat(),
                        "count": len(invites),
                    })
        return len(invites)

    def get_network(self, user_id: int) -> dict:
        level_counts = self.repository.get_network_level_counts(user_id)
        stats = self.stats_aggregator.get_stats(user_id)

        direct = level_counts.get(1, 0)
        return {
            "user_id": user_id,
            "direct_referrals": direct,
            "inherited_referrals": sum(level_counts.values()) - direct,
            "active_referrals": stats.active_referrals,
            "levels": {
                level: level_counts[level]
                for level in sorted(level_counts)
            },
        }

    def get_earnings_summary(self, user_id: int) -> dict:
        summary = self.earnings_repository.get_earnings_summary(user_id)
        stats = self.stats_aggregator.get_stats(user_id)

        return {
            "user_id": user_id,
            "pending": summary["pending"],
            "paid": summary["paid"],
            "month_key": stats.month_key,
            "month_earned_minor_units": stats.month_earned_minor_units,
            "month_paid_minor_units": stats.month_paid_minor_units,
            "level_month_amounts": stats.level_month_amounts,
        }

    def _invite_from_referral_code(self, code: str,
                                   now: datetime.datetime) -> Optional[Invite]:
        referral_code = self.repository.find_referral_code(code)
        if not referral_code:
            return None

        invite = Invite()
        invite.code = self._generate_unique_code()
        invite.inviter_user_id = referral_code.user_id
        invite.channel = "link"
        invite.status = InviteStatus.PENDING
        invite.invited_at = now
        return invite

    def _validate_referral(self, new_user_id: int,
                           inviter_user_id: int) -> Optional[Ineligible]:
        if new_user_id == inviter_user_id:
            return Ineligible(IneligibilityReason.SELF_REFERRAL)

        if self.user_directory.get_user(inviter_user_id) is None:
            return Ineligible(IneligibilityReason.USER_NOT_FOUND,
                              {"user_id": inviter_user_id})

        if self.repository.find_invite_for_invitee(
                new_user_id) or self.repository.get_chain(new_user_id):
            return Ineligible(IneligibilityReason.ALREADY_REFERRED)

        inviter_chain = self.repository.get_chain(inviter_user_id)
        if inviter_chain and new_user_id in inviter_chain.ancestor_ids:
            return Ineligible(IneligibilityReason.REFERRAL_CYCLE)

        return None

    def _build_chain(self, user_id: int, inviter_user_id: int):
        try:
            return self.chain_builder.build(user_id, inviter_user_id)
        except Exception as e:
            # activation rebuilds a missing chain
            logger.exception(e,
                             extra={
                                 "user_id": user_id,
                                 "inviter_user_id": inviter_user_id,
                             })
            return None

    def _deliver(self, invite: Invite, now: datetime.datetime) -> bool:
        try:
            inviter = self.user_directory.get_user(invite.inviter_user_id)
            inviter_name = inviter.full_name if inviter else ""
            share_link = self.share_url_template.format(code=invite.code)
            self.invite_delivery.send_invite(invite, inviter_name, share_link)

            invite.sms_sent_at = now
            self.repository.persist(invite)
            self.repository.commit()
            return True
        except Exception as e:
            self.repository.rollback()
            logger.exception(e, extra={"invite_id": invite.id})
            return False

    def _generate_unique_code(self) -> str:
        for _ in range(MAX_CODE_GENERATION_ATTEMPTS):
            code = generate_referral_code()
            if not self.repository.code_exists(code):
                return code

        raise ReferralEngineException("Could not generate a unique referral code.")
