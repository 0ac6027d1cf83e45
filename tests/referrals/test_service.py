import datetime

from referral_engine.earnings.config import CommissionSchedule
from referral_engine.earnings.models import EarningStatus
from referral_engine.referrals.chain_builder import ChainBuilder
from referral_engine.referrals.config import CHAIN_POLICY_ACTIVATION
from referral_engine.referrals.fraud_guard import FraudGuard, FraudPolicy
from referral_engine.referrals.models import Invite, InviteStatus, ReferralChain, ReferralCode
from referral_engine.referrals.service import ReferralService
from referral_engine.results import InviteCreated, Ineligible, IneligibilityReason, SignupProcessed, \
    ReferralActivated, NothingToActivate, SystemFailure
from referral_engine.stats.aggregator import StatsAggregator
from referral_engine.tests.mocks.fakes import FakeDatabase, FakeReferralRepository, FakeStatsRepository, \
    FakeEarningsRepository, FakeUserDirectory, RecordingInviteDelivery, make_user, make_chain, make_earning, NOW

INVITER_ID = 1
NEW_USER_ID = 2
PHONE = "+27710005555"


def _make_service(db, policy=None, delivery=None, users=None):
    repository = FakeReferralRepository(db)
    user_directory = FakeUserDirectory(
        users if users is not None else
        [make_user(INVITER_ID), make_user(NEW_USER_ID, phone_number=PHONE)])
    stats_aggregator = StatsAggregator(FakeStatsRepository(db), lambda: NOW)
    schedule = CommissionSchedule.preset("three_level_uncapped")
    return ReferralService(
        repository, FakeEarningsRepository(db),
        FraudGuard(user_directory, repository, FraudPolicy()),
        ChainBuilder(repository, stats_aggregator, schedule),
        stats_aggregator,
        delivery or RecordingInviteDelivery(),
        user_directory,
        policy=policy,
        share_url_template="https://app.example/signup?ref={code}")


def _make_invite(code="REF-ABC123", status=InviteStatus.PENDING):
    invite = Invite()
    invite.code = code
    invite.inviter_user_id = INVITER_ID
    invite.invitee_phone_number = PHONE
    invite.status = status
    invite.invited_at = NOW - datetime.timedelta(days=1)
    return invite


def test_send_invite():
    db = FakeDatabase()
    delivery = RecordingInviteDelivery()
    service = _make_service(db, delivery=delivery)

    result = service.send_invite(INVITER_ID, PHONE, now=NOW)

    assert isinstance(result, InviteCreated)
    assert result.delivered
    invites = db.rows(Invite)
    assert len(invites) == 1
    assert invites[0].status == InviteStatus.PENDING
    assert invites[0].code.startswith("REF-")
    assert invites[0].sms_sent_at == NOW
    assert delivery.sent == [(invites[0].code, "User1",
                              f"https://app.example/signup?ref={invites[0].code}")]
    assert service.stats_aggregator.get_stats(
        INVITER_ID).total_invites_sent == 1


def test_send_invite_delivery_failure_keeps_invite():
    db = FakeDatabase()
    service = _make_service(
        db, delivery=RecordingInviteDelivery(Exception("sms gateway down")))

    result = service.send_invite(INVITER_ID, PHONE, now=NOW)

    assert isinstance(result, InviteCreated)
    assert not result.delivered
    invites = db.rows(Invite)
    assert len(invites) == 1
    assert invites[0].sms_sent_at is None


def test_send_invite_ineligible():
    db = FakeDatabase()
    db.add(_make_invite())
    service = _make_service(db)

    result = service.send_invite(INVITER_ID, PHONE, now=NOW)

    assert result == Ineligible(IneligibilityReason.ALREADY_INVITED)
    assert len(db.rows(Invite)) == 1


def test_send_invite_system_failure(monkeypatch):
    db = FakeDatabase()
    service = _make_service(db)
    error = Exception("db down")

    def failing_persist(*args, **kwargs):
        raise error

    monkeypatch.setattr(service.repository, "persist", failing_persist)

    result = service.send_invite(INVITER_ID, PHONE, now=NOW)

    assert result == SystemFailure(error)
    assert db.rows(Invite) == []


def test_process_signup_builds_chain():
    db = FakeDatabase()
    db.add(_make_invite())
    service = _make_service(db)

    result = service.process_signup(NEW_USER_ID, "REF-ABC123", now=NOW)

    assert isinstance(result, SignupProcessed)
    assert result.invite.status == InviteStatus.SIGNED_UP
    assert result.invite.invitee_user_id == NEW_USER_ID
    assert result.chain.ancestor_ids == [INVITER_ID]
    assert db.rows(Invite)[0].status == InviteStatus.SIGNED_UP
    assert len(db.rows(ReferralChain)) == 1


def test_process_signup_activation_policy_defers_chain():
    db = FakeDatabase()
    db.add(_make_invite())
    service = _make_service(db, policy=CHAIN_POLICY_ACTIVATION)

    result = service.process_signup(NEW_USER_ID, "REF-ABC123", now=NOW)

    assert isinstance(result, SignupProcessed)
    assert result.chain is None
    assert db.rows(ReferralChain) == []

    activated = service.activate_referral(NEW_USER_ID, now=NOW)

    assert isinstance(activated, ReferralActivated)
    assert activated.chain.ancestor_ids == [INVITER_ID]
    assert activated.invite.status == InviteStatus.ACTIVATED
    assert service.stats_aggregator.get_stats(
        INVITER_ID).active_referrals == 1


def test_process_signup_with_personal_code():
    db = FakeDatabase()
    referral_code = ReferralCode()
    referral_code.user_id = INVITER_ID
    referral_code.code = "REF-PERSON"
    db.add(referral_code)
    service = _make_service(db)

    result = service.process_signup(NEW_USER_ID, "REF-PERSON", now=NOW)

    assert isinstance(result, SignupProcessed)
    assert result.invite.inviter_user_id == INVITER_ID
    assert result.invite.channel == "link"
    assert db.rows(Invite)[0].status == InviteStatus.SIGNED_UP


def test_process_signup_unknown_code():
    db = FakeDatabase()

    result = _make_service(db).process_signup(NEW_USER_ID, "REF-NOPE00")

    assert result.reason == IneligibilityReason.INVALID_REFERRAL_CODE


def test_process_signup_used_code():
    db = FakeDatabase()
    db.add(_make_invite(status=InviteStatus.EXPIRED))

    result = _make_service(db).process_signup(NEW_USER_ID, "REF-ABC123")

    assert result.reason == IneligibilityReason.INVALID_REFERRAL_CODE


def test_process_signup_self_referral():
    db = FakeDatabase()
    db.add(_make_invite())

    result = _make_service(db).process_signup(INVITER_ID, "REF-ABC123")

    assert result.reason == IneligibilityReason.SELF_REFERRAL
    assert db.rows(Invite)[0].status == InviteStatus.PENDING


def test_process_signup_already_referred():
    db = FakeDatabase()
    db.add(_make_invite(), make_chain(NEW_USER_ID, [9]))

    result = _make_service(db).process_signup(NEW_USER_ID, "REF-ABC123")

    assert result.reason == IneligibilityReason.ALREADY_REFERRED


def test_process_signup_cycle():
    db = FakeDatabase()
    db.add(_make_invite(), make_chain(INVITER_ID, [NEW_USER_ID]))
    service = _make_service(db)
    result = service.process_signup(NEW_USER_ID, "REF-ABC123")

    assert result.reason == IneligibilityReason.REFERRAL_CYCLE


def test_activate_without_invite():
    assert _make_service(FakeDatabase()).activate_referral(
        NEW_USER_ID) == NothingToActivate()


def test_activate_twice():
    db = FakeDatabase()
    db.add(_make_invite())
    service = _make_service(db)
    service.process_signup(NEW_USER_ID, "REF-ABC123", now=NOW)

    assert isinstance(service.activate_referral(NEW_USER_ID, now=NOW),
                      ReferralActivated)
    assert service.activate_referral(NEW_USER_ID,
                                     now=NOW) == NothingToActivate()
    assert service.stats_aggregator.get_stats(
        INVITER_ID).active_referrals == 1


def test_expire_invites():
    db = FakeDatabase()
    old = _make_invite("REF-OLD001")
    old.invited_at = NOW - datetime.timedelta(days=31)
    old_signed_up = _make_invite("REF-OLD002", InviteStatus.SIGNED_UP)
    old_signed_up.invited_at = NOW - datetime.timedelta(days=40)
    old_activated = _make_invite("REF-OLD003", InviteStatus.ACTIVATED)
    old_activated.invited_at = NOW - datetime.timedelta(days=40)
    fresh = _make_invite("REF-NEW001")
    db.add(old, old_signed_up, old_activated, fresh)

    assert _make_service(db).expire_invites(NOW) == 2

    statuses = {i.code: i.status for i in db.rows(Invite)}
    assert statuses == {
        "REF-OLD001": InviteStatus.EXPIRED,
        "REF-OLD002": InviteStatus.EXPIRED,
        "REF-OLD003": InviteStatus.ACTIVATED,
        "REF-NEW001": InviteStatus.PENDING,
    }


def test_referral_code_is_stable():
    db = FakeDatabase()
    service = _make_service(db)

    code = service.get_referral_code(INVITER_ID)

    assert code.code.startswith("REF-")
    assert service.get_referral_code(INVITER_ID).code == code.code
    assert service.get_share_link(
        INVITER_ID) == f"https://app.example/signup?ref={code.code}"
    assert len(db.rows(ReferralCode)) == 1


def test_get_network():
    db = FakeDatabase()
    db.add(make_chain(10, [INVITER_ID]), make_chain(11, [INVITER_ID]),
           make_chain(12, [10, INVITER_ID]), make_chain(13, [12, 10, INVITER_ID]))

    network = _make_service(db).get_network(INVITER_ID)

    assert network["direct_referrals"] == 2
    assert network["inherited_referrals"] == 2
    assert network["levels"] == {1: 2, 2: 1, 3: 1}


def test_get_earnings_summary():
    db = FakeDatabase()
    paid = make_earning(INVITER_ID, 30, "tx-2")
    paid.status = EarningStatus.PAID
    db.add(make_earning(INVITER_ID, 50, "tx-1"), paid)

    summary = _make_service(db).get_earnings_summary(INVITER_ID)

    assert summary["pending"] == {"earnings_count": 1, "amount_minor_units": 50}
    assert summary["paid"] == {"earnings_count": 1, "amount_minor_units": 30}
    assert summary["month_key"] == "2024-03"


def test_send_invite_stores_normalized_phone_number():
    db = FakeDatabase()
    service = _make_service(db)

    assert isinstance(
        service.send_invite(INVITER_ID, "+27 71 000 5555", now=NOW),
        InviteCreated)
    result = service.send_invite(INVITER_ID, "+27-71-000-5555", now=NOW)

    assert isinstance(result, Ineligible)
    assert result.reason == IneligibilityReason.ALREADY_INVITED
    assert [i.invitee_phone_number for i in db.rows(Invite)] == [PHONE]
