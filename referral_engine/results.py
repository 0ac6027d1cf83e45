"""
Tagged outcomes returned by referral operations.

Callers branch on the result type instead of catching exceptions or matching
error messages: a domain refusal is an `Ineligible`, an infrastructure problem
is a `SystemFailure`, anything else is a success type.
"""
import enum


class IneligibilityReason(str, enum.Enum):
    USER_NOT_FOUND = 'USER_NOT_FOUND'
    SELF_REFERRAL = 'SELF_REFERRAL'
    KYC_NOT_VERIFIED = 'KYC_NOT_VERIFIED'
    ACCOUNT_TOO_NEW = 'ACCOUNT_TOO_NEW'
    DAILY_INVITE_LIMIT = 'DAILY_INVITE_LIMIT'
    MONTHLY_INVITE_LIMIT = 'MONTHLY_INVITE_LIMIT'
    ALREADY_INVITED = 'ALREADY_INVITED'
    INVALID_REFERRAL_CODE = 'INVALID_REFERRAL_CODE'
    REFERRAL_CYCLE = 'REFERRAL_CYCLE'
    ALREADY_REFERRED = 'ALREADY_REFERRED'


class Result:
    is_success = False

    def __eq__(self, other):
        return type(self) is type(other) and self.__dict__ == other.__dict__

    def __repr__(self):
        fields = ", ".join(f"{k}={v!r}" for k, v in self.__dict__.items())
        return f"{self.__class__.__name__}({fields})"


class Eligible(Result):
    is_success = True


class Ineligible(Result):

    def __init__(self, reason: IneligibilityReason, details: dict = None):
        self.reason = reason
        self.details = details or {}


class SystemFailure(Result):

    def __init__(self, cause: Exception):
        self.cause = cause


class InviteCreated(Result):
    is_success = True

    def __init__(self, invite, delivered: bool):
        self.invite = invite
        self.delivered = delivered


class SignupProcessed(Result):
    is_success = True

    def __init__(self, invite, chain=None):
        self.invite = invite
        self.chain = chain


class ReferralActivated(Result):
    is_success = True

    def __init__(self, invite, chain=None):
        self.invite = invite
        self.chain = chain


class NothingToActivate(Result):
    is_success = True
