import os

from referral_engine.exceptions import InvalidConfigurationException

CHAIN_POLICY_SIGNUP = "signup"
CHAIN_POLICY_ACTIVATION = "activation"

REFERRAL_CHAIN_POLICY = os.getenv("REFERRAL_CHAIN_POLICY", CHAIN_POLICY_SIGNUP)
REFERRAL_INVITE_EXPIRY_DAYS = int(os.getenv("REFERRAL_INVITE_EXPIRY_DAYS",
                                            "30"))
REFERRAL_SHARE_URL_TEMPLATE = os.getenv(
    "REFERRAL_SHARE_URL_TEMPLATE",
    "https://app.mymoolah.africa/signup?ref={code}")
REFERRAL_CODE_PREFIX = "REF-"
REFERRAL_CODE_LENGTH = 6


def chain_policy(value: str = None) -> str:
    value = (value or REFERRAL_CHAIN_POLICY).lower()
    if value not in (CHAIN_POLICY_SIGNUP, CHAIN_POLICY_ACTIVATION):
        raise InvalidConfigurationException(
            f"REFERRAL_CHAIN_POLICY must be one of "
            f"{CHAIN_POLICY_SIGNUP}, {CHAIN_POLICY_ACTIVATION}, got {value}")
    return value
