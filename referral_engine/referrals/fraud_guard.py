import datetime
import os

from referral_engine.models import KYC_STATUS_VERIFIED
from referral_engine.referrals.models import normalize_phone_number
from referral_engine.referrals.repository import ReferralRepository
from referral_engine.results import Eligible, Ineligible, IneligibilityReason
from referral_engine.user_directory import UserDirectoryInterface
from referral_engine.utils import get_logger

logger = get_logger(__name__)

REFERRAL_SKIP_VALIDATION = os.getenv("REFERRAL_SKIP_VALIDATION",
                                     "false").lower() == "true"
REFERRAL_MIN_ACCOUNT_AGE_DAYS = int(
    os.getenv("REFERRAL_MIN_ACCOUNT_AGE_DAYS", "30"))
REFERRAL_MAX_INVITES_PER_DAY = int(
    os.getenv("REFERRAL_MAX_INVITES_PER_DAY", "10"))
REFERRAL_MAX_INVITES_PER_MONTH = int(
    os.getenv("REFERRAL_MAX_INVITES_PER_MONTH", "100"))


class FraudPolicy:

    def __init__(self,
                 enforce_checks: bool = True,
                 min_account_age_days: int = 30,
                 max_invites_per_day: int = 10,
                 max_invites_per_month: int = 100,
                 required_kyc_status: str = KYC_STATUS_VERIFIED):
        self.enforce_checks = enforce_checks
        self.min_account_age_days = min_account_age_days
        self.max_invites_per_day = max_invites_per_day
        self.max_invites_per_month = max_invites_per_month
        self.required_kyc_status = required_kyc_status

    @classmethod
    def from_env(cls) -> "FraudPolicy":
        policy = cls(enforce_checks=not REFERRAL_SKIP_VALIDATION,
                     min_account_age_days=REFERRAL_MIN_ACCOUNT_AGE_DAYS,
                     max_invites_per_day=REFERRAL_MAX_INVITES_PER_DAY,
                     max_invites_per_month=REFERRAL_MAX_INVITES_PER_MONTH)
        if not policy.enforce_checks:
            logger.warning("Referral fraud checks are disabled")
        return policy


class FraudGuard:
    """
    Eligibility gate evaluated before an invite is created. The first failing
    check determines the returned reason.
    """

    def __init__(self, user_directory: UserDirectoryInterface,
                 repository: ReferralRepository, policy: FraudPolicy):
        self.user_directory = user_directory
        self.repository = repository
        self.policy = policy

    def check(self,
              requester_id: int,
              target_phone_number: str,
              now: datetime.datetime = None):
        now = now or datetime.datetime.now(datetime.timezone.utc)

        requester = self.user_directory.get_user(requester_id)
        if not requester:
            return self._ineligible(requester_id,
                                    IneligibilityReason.USER_NOT_FOUND)

        target = normalize_phone_number(target_phone_number)
        if target and target.lstrip("+") == normalize_phone_number(
                requester.phone_number).lstrip("+"):
            return self._ineligible(requester_id,
                                    IneligibilityReason.SELF_REFERRAL)

        if not self.policy.enforce_checks:
            return Eligible()

        if requester.kyc_status != self.policy.required_kyc_status:
            return self._ineligible(requester_id,
                                    IneligibilityReason.KYC_NOT_VERIFIED,
                                    {"kyc_status": requester.kyc_status})

        account_age_days = requester.account_age_days(now)
        if account_age_days < self.policy.min_account_age_days:
            return self._ineligible(
                requester_id, IneligibilityReason.ACCOUNT_TOO_NEW, {
                    "account_age_days": account_age_days,
                    "min_account_age_days": self.policy.min_account_age_days,
                })

        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        invites_today = self.repository.count_invites_since(
            requester_id, start_of_day)
        if invites_today >= self.policy.max_invites_per_day:
            return self._ineligible(
                requester_id, IneligibilityReason.DAILY_INVITE_LIMIT, {
                    "invites_today": invites_today,
                    "limit": self.policy.max_invites_per_day,
                })

        start_of_month = start_of_day.replace(day=1)
        invites_this_month = self.repository.count_invites_since(
            requester_id, start_of_month)
        if invites_this_month >= self.policy.max_invites_per_month:
            return self._ineligible(
                requester_id, IneligibilityReason.MONTHLY_INVITE_LIMIT, {
                    "invites_this_month": invites_this_month,
                    "limit": self.policy.max_invites_per_month,
                })

        if self.repository.has_open_invite(requester_id, target):
            return self._ineligible(requester_id,
                                    IneligibilityReason.ALREADY_INVITED)

        return Eligible()

    @staticmethod
    def _ineligible(requester_id, reason: IneligibilityReason,
                    details: dict = None) -> Ineligible:
        logger.info("Invite rejected",
                    extra={
                        "requester_id": requester_id,
                        "reason": reason.value,
                        "details": details,
                    })
        return Ineligible(reason, details)
