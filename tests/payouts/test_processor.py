import datetime

import pytest

from referral_engine.data_access.db_lock import LockManager
from referral_engine.earnings.models import Earning, EarningStatus
from referral_engine.payouts.exceptions import PayoutBatchException
from referral_engine.payouts.models import PayoutBatch, PayoutBatchStatus, FailedUser
from referral_engine.payouts.processor import PayoutBatchProcessor, BATCH_TIMEOUT_REASON
from referral_engine.services.notification import NotificationService
from referral_engine.services.sendgrid import SendGridService
from referral_engine.stats.aggregator import StatsAggregator
from referral_engine.stats.models import UserReferralStats
from referral_engine.tests.mocks.fakes import FakeDatabase, FakePayoutRepository, FakeEarningsRepository, \
    FakeStatsRepository, FakeWalletRepository, make_wallet, make_earning, fake_database_lock, busy_database_lock, NOW
from referral_engine.tests.mocks.repository_mocks import mock_record_calls
from referral_engine.wallet.models import Wallet, LedgerTransaction
from referral_engine.wallet.service import DatabaseWalletService, DatabaseLedger

PAYOUT_DATE = datetime.date(2024, 3, 15)
BATCH_ID = "PAYOUT-2024-03-15"


@pytest.fixture(autouse=True)
def no_advisory_lock(monkeypatch):
    monkeypatch.setattr(LockManager, "database_lock", fake_database_lock)


def _make_processor(monkeypatch, db, timer=None, notifications=None):
    sendgrid = SendGridService()
    monkeypatch.setattr(sendgrid, "send_email", mock_record_calls())
    notification_service = NotificationService(sendgrid, ["ops@example.com"])
    if notifications is not None:
        monkeypatch.setattr(
            notification_service, "notify_payout_failures",
            lambda batch: notifications.append(("failures", batch.batch_id)))
        monkeypatch.setattr(
            notification_service, "notify_payout_batch_failed",
            lambda batch_id, e: notifications.append(("failed", batch_id)))

    kwargs = {"timer": timer} if timer else {}
    return PayoutBatchProcessor(FakePayoutRepository(db),
                                FakeEarningsRepository(db),
                                DatabaseWalletService(FakeWalletRepository(db)),
                                DatabaseLedger(FakeWalletRepository(db)),
                                StatsAggregator(FakeStatsRepository(db),
                                                lambda: NOW),
                                notification_service,
                                timeout_seconds=10,
                                claim_timeout_seconds=3600,
                                clock=lambda: NOW,
                                **kwargs)


def _balance(db, user_id):
    return [i for i in db.rows(Wallet) if i.user_id == user_id][0].balance_minor_units


def _earnings(db, user_id):
    return [i for i in db.rows(Earning) if i.earner_user_id == user_id]


def test_pays_pending_earnings(monkeypatch):
    db = FakeDatabase()
    db.add(make_wallet(1, 100), make_earning(1, 50, "tx-1"),
           make_earning(1, 30, "tx-2"))
    earning_ids = sorted(i.id for i in _earnings(db, 1))

    result = _make_processor(monkeypatch, db).run_daily_batch(PAYOUT_DATE)

    assert result.status == PayoutBatchStatus.COMPLETED
    assert result.batch_id == BATCH_ID
    assert result.total_users == 1
    assert result.total_amount_minor_units == 80
    assert result.total_earnings_count == 2
    assert result.failed_users == []
    assert not result.already_completed

    assert _balance(db, 1) == 180

    ledger = db.rows(LedgerTransaction)
    assert len(ledger) == 1
    assert ledger[0].amount_minor_units == 80
    assert ledger[0].reference == f"REF_PAYOUT_{BATCH_ID}_1_{earning_ids[0]}"
    assert ledger[0].metadata == {
        "batch_id": BATCH_ID,
        "earning_ids": earning_ids
    }

    for earning in _earnings(db, 1):
        assert earning.status == EarningStatus.PAID
        assert earning.payout_batch_id == BATCH_ID
        assert earning.paid_at == NOW

    stats = FakeStatsRepository(db).find_stats(1)
    assert stats.total_paid_minor_units == 80

    batch = db.rows(PayoutBatch)[0]
    assert batch.status == PayoutBatchStatus.COMPLETED
    assert batch.completed_at == NOW


def test_rerun_of_completed_batch_is_noop(monkeypatch):
    db = FakeDatabase()
    db.add(make_wallet(1, 100), make_earning(1, 50, "tx-1"),
           make_earning(1, 30, "tx-2"))
    processor = _make_processor(monkeypatch, db)
    processor.run_daily_batch(PAYOUT_DATE)

    # earned after the batch completed, waits for the next date
    db.add(make_earning(1, 20, "tx-3"))

    result = processor.run_daily_batch(PAYOUT_DATE)

    assert result.already_completed
    assert result.status == PayoutBatchStatus.COMPLETED
    assert result.total_amount_minor_units == 80
    assert _balance(db, 1) == 180
    assert len(db.rows(LedgerTransaction)) == 1
    late = [i for i in _earnings(db, 1) if i.transaction_id == "tx-3"][0]
    assert late.status == EarningStatus.PENDING
    assert late.claimed_by_batch_id is None


def test_failed_user_is_isolated(monkeypatch):
    db = FakeDatabase()
    # user 1 has no wallet
    db.add(make_wallet(2, 0), make_earning(1, 50, "tx-1"),
           make_earning(2, 70, "tx-2"))
    notifications = []

    result = _make_processor(monkeypatch, db,
                             notifications=notifications).run_daily_batch(
                                 PAYOUT_DATE)

    assert result.status == PayoutBatchStatus.COMPLETED
    assert result.total_users == 1
    assert result.total_amount_minor_units == 70
    assert [(i.user_id, i.earnings_count, i.amount_minor_units)
            for i in result.failed_users] == [(1, 1, 50)]
    assert "Wallet not found" in result.failed_users[0].reason

    assert _balance(db, 2) == 70


def test_resumed_batch_pays_same_user_again(monkeypatch):
    db = FakeDatabase()
    db.add(make_wallet(1, 0), make_earning(1, 50, "tx-1"))
    _make_processor(monkeypatch, db).run_daily_batch(PAYOUT_DATE)
    batch = db.rows(PayoutBatch)[0]
    batch.status = PayoutBatchStatus.PROCESSING
    db.add(batch, make_earning(1, 30, "tx-2"))

    result = _make_processor(monkeypatch, db).run_daily_batch(PAYOUT_DATE)

    assert result.failed_users == []
    assert result.total_amount_minor_units == 80
    assert _balance(db, 1) == 80
    references = [i.reference for i in db.rows(LedgerTransaction)]
    assert len(references) == 2
    assert len(set(references)) == 2
    assert _earnings(db, 2)[0].status == EarningStatus.PAID

    failed_earning = _earnings(db, 1)[0]
    assert failed_earning.status == EarningStatus.PENDING
    assert failed_earning.claimed_by_batch_id is None
    assert notifications == [("failures", BATCH_ID)]


def test_credit_is_rolled_back_with_ledger_failure(monkeypatch):
    db = FakeDatabase()
    db.add(make_wallet(1, 100), make_wallet(2, 0),
           make_earning(1, 50, "tx-1"), make_earning(2, 70, "tx-2"))
    processor = _make_processor(monkeypatch, db)
    create = processor.ledger.create

    def failing_create(user_id, *args):
        if user_id == 1:
            raise Exception("ledger unavailable")
        return create(user_id, *args)

    monkeypatch.setattr(processor.ledger, "create", failing_create)

    result = processor.run_daily_batch(PAYOUT_DATE)

    assert result.failed_users == [FailedUser(1, "ledger unavailable", 1, 50)]
    assert _balance(db, 1) == 100
    assert _earnings(db, 1)[0].status == EarningStatus.PENDING
    assert _balance(db, 2) == 70
    assert [i.user_id for i in db.rows(LedgerTransaction)] == [2]
    assert FakeStatsRepository(db).find_stats(1) is None


def test_failed_users_are_retried_next_run(monkeypatch):
    db = FakeDatabase()
    db.add(make_earning(1, 50, "tx-1"))
    _make_processor(monkeypatch, db).run_daily_batch(PAYOUT_DATE)

    db.add(make_wallet(1, 0))
    result = _make_processor(monkeypatch, db).run_daily_batch(
        PAYOUT_DATE + datetime.timedelta(days=1))

    assert result.total_amount_minor_units == 50
    assert result.failed_users == []
    assert _balance(db, 1) == 50


def test_timeout_releases_unattempted_users(monkeypatch):
    db = FakeDatabase()
    db.add(make_wallet(1, 0), make_wallet(2, 0), make_earning(1, 50, "tx-1"),
           make_earning(2, 70, "tx-2"))
    ticks = iter([0, 1, 100])

    result = _make_processor(monkeypatch, db,
                             timer=lambda: next(ticks)).run_daily_batch(
                                 PAYOUT_DATE)

    assert result.status == PayoutBatchStatus.COMPLETED
    assert result.total_users == 1
    assert result.failed_users == [
        FailedUser(2, BATCH_TIMEOUT_REASON, 1, 70)
    ]
    assert "timed out" in result.message
    assert _balance(db, 1) == 50
    skipped = _earnings(db, 2)[0]
    assert skipped.status == EarningStatus.PENDING
    assert skipped.claimed_by_batch_id is None
    assert _balance(db, 2) == 0


def test_claim_failure_marks_batch_failed(monkeypatch):
    db = FakeDatabase()
    db.add(make_wallet(1, 0), make_earning(1, 50, "tx-1"))
    notifications = []
    processor = _make_processor(monkeypatch, db, notifications=notifications)

    def failing_claim(*args):
        raise Exception("storage unreachable")

    monkeypatch.setattr(processor.repository, "claim_pending_earnings",
                        failing_claim)

    with pytest.raises(PayoutBatchException):
        processor.run_daily_batch(PAYOUT_DATE)

    batch = db.rows(PayoutBatch)[0]
    assert batch.status == PayoutBatchStatus.FAILED
    assert batch.error == "storage unreachable"
    assert notifications == [("failed", BATCH_ID)]
    earning = _earnings(db, 1)[0]
    assert earning.status == EarningStatus.PENDING
    assert earning.claimed_by_batch_id is None


def test_failed_batch_is_resumed(monkeypatch):
    db = FakeDatabase()
    db.add(make_wallet(1, 0), make_earning(1, 50, "tx-1"))
    failed_batch = PayoutBatch()
    failed_batch.batch_id = BATCH_ID
    failed_batch.payout_date = PAYOUT_DATE
    failed_batch.status = PayoutBatchStatus.FAILED
    failed_batch.error = "storage unreachable"
    db.add(failed_batch)

    result = _make_processor(monkeypatch, db).run_daily_batch(PAYOUT_DATE)

    assert result.status == PayoutBatchStatus.COMPLETED
    assert result.total_amount_minor_units == 50
    batch = db.rows(PayoutBatch)[0]
    assert batch.error is None
    assert batch.version == 1


def test_interrupted_batch_is_resumed(monkeypatch):
    db = FakeDatabase()
    paid = make_earning(1, 50, "tx-1")
    paid.status = EarningStatus.PAID
    paid.payout_batch_id = BATCH_ID
    paid.claimed_by_batch_id = BATCH_ID
    claimed = make_earning(2, 70, "tx-2")
    claimed.claimed_by_batch_id = BATCH_ID
    claimed.claimed_at = NOW
    processing_batch = PayoutBatch()
    processing_batch.batch_id = BATCH_ID
    processing_batch.payout_date = PAYOUT_DATE
    db.add(make_wallet(1, 50), make_wallet(2, 0), paid, claimed,
           processing_batch)

    result = _make_processor(monkeypatch, db).run_daily_batch(PAYOUT_DATE)

    assert result.total_users == 2
    assert result.total_amount_minor_units == 120
    assert _balance(db, 1) == 50
    assert _balance(db, 2) == 70


def test_claims_of_other_batches(monkeypatch):
    db = FakeDatabase()
    stale = make_earning(1, 50, "tx-1")
    stale.claimed_by_batch_id = "PAYOUT-2024-03-14"
    stale.claimed_at = NOW - datetime.timedelta(hours=2)
    fresh = make_earning(2, 70, "tx-2")
    fresh.claimed_by_batch_id = "PAYOUT-2024-03-14"
    fresh.claimed_at = NOW - datetime.timedelta(minutes=10)
    db.add(make_wallet(1, 0), make_wallet(2, 0), stale, fresh)

    result = _make_processor(monkeypatch, db).run_daily_batch(PAYOUT_DATE)

    assert result.total_amount_minor_units == 50
    assert _balance(db, 1) == 50
    assert _balance(db, 2) == 0
    untouched = _earnings(db, 2)[0]
    assert untouched.status == EarningStatus.PENDING
    assert untouched.claimed_by_batch_id == "PAYOUT-2024-03-14"


def test_concurrent_run_returns_snapshot(monkeypatch):
    db = FakeDatabase()
    db.add(make_wallet(1, 0), make_earning(1, 50, "tx-1"))
    monkeypatch.setattr(LockManager, "database_lock", busy_database_lock)

    result = _make_processor(monkeypatch, db).run_daily_batch(PAYOUT_DATE)

    assert result.status == PayoutBatchStatus.PROCESSING
    assert result.batch_id == BATCH_ID
    assert _balance(db, 1) == 0
    assert _earnings(db, 1)[0].claimed_by_batch_id is None


def test_no_pending_earnings(monkeypatch):
    db = FakeDatabase()

    result = _make_processor(monkeypatch, db).run_daily_batch(PAYOUT_DATE)

    assert result.status == PayoutBatchStatus.COMPLETED
    assert result.total_users == 0
    assert result.total_amount_minor_units == 0
    assert db.rows(UserReferralStats) == []


def test_payout_history_and_pending(monkeypatch):
    db = FakeDatabase()
    db.add(make_wallet(1, 0), make_earning(1, 50, "tx-1"))
    processor = _make_processor(monkeypatch, db)
    processor.run_daily_batch(PAYOUT_DATE)
    paid_earning_id = _earnings(db, 1)[0].id
    db.add(make_earning(1, 20, "tx-2"))

    history = processor.get_user_payout_history(1)
    pending = processor.get_pending_earnings(1)

    assert [i.reference for i in history] == [f"REF_PAYOUT_{BATCH_ID}_1_{paid_earning_id}"]
    assert pending["earnings_count"] == 1
    assert pending["amount_minor_units"] == 20


def test_notification_failure_does_not_fail_batch(monkeypatch):
    db = FakeDatabase()
    db.add(make_earning(1, 50, "tx-1"))
    processor = _make_processor(monkeypatch, db)
    sent = []

    def failing_send_email(**kwargs):
        mock_record_calls(sent)(**kwargs)
        raise Exception("sendgrid unreachable")

    monkeypatch.setattr(processor.notification_service.sendgrid,
                        "send_email", failing_send_email)

    result = processor.run_daily_batch(PAYOUT_DATE)

    assert result.status == PayoutBatchStatus.COMPLETED
    assert len(sent) == 1
    assert sent[0][1]["to"] == ["ops@example.com"]
