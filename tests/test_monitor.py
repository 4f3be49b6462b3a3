"""
Tests for the background monitor sweeps.

These tests verify:
  - retry registers stalled and failed transactions
  - retry expires transactions paid too long ago, without calling the ILS
  - report groups unresolved transactions by driver and marks them reported
  - the CLI parser accepts both commands
"""

from datetime import timedelta

from finepay.cli import build_parser
from finepay.database import utcnow
from finepay.models.transaction import TransactionStatus
from finepay.services import monitor_service, transaction_service


class TestRetry:

    async def test_registers_stalled_and_failed(
        self, db_session, session_factory, fake_ils, make_user, make_transaction
    ):
        user = await make_user()
        now = utcnow()
        stalled = await make_transaction(user, paid_at=now - timedelta(minutes=10))
        failed = await make_transaction(user, paid_at=now - timedelta(minutes=5))
        await transaction_service.mark_registration_failed(db_session, failed, "timeout")
        await db_session.commit()

        report = await monitor_service.retry_failed_transactions(
            session_factory, fake_ils, minimum_paid_age=120, expire_hours=96, now=now
        )

        assert report.processed == 2
        assert report.registered == 2
        for transaction in (stalled, failed):
            found = await transaction_service.get_transaction_by_identifier(
                db_session, transaction.transaction_id
            )
            assert found.status == TransactionStatus.COMPLETE

    async def test_expires_old_payments(
        self, db_session, session_factory, fake_ils, make_user, make_transaction
    ):
        user = await make_user()
        now = utcnow()
        old = await make_transaction(user, paid_at=now - timedelta(hours=100))
        fake_ils.calls.clear()

        report = await monitor_service.retry_failed_transactions(
            session_factory, fake_ils, minimum_paid_age=120, expire_hours=96, now=now
        )

        assert report.expired == 1
        assert fake_ils.calls == []
        found = await transaction_service.get_transaction_by_identifier(
            db_session, old.transaction_id
        )
        assert found.status == TransactionStatus.REGISTRATION_EXPIRED
        assert found.reported_at == now

    async def test_failures_are_counted(
        self, session_factory, fake_ils, make_user, make_transaction
    ):
        user = await make_user()
        now = utcnow()
        await make_transaction(user, paid_at=now - timedelta(minutes=10))
        fake_ils.clear_exception = RuntimeError("ILS down")

        report = await monitor_service.retry_failed_transactions(
            session_factory, fake_ils, minimum_paid_age=120, expire_hours=96, now=now
        )

        assert report.failed == 1
        assert report.registered == 0


class TestReport:

    async def test_groups_by_driver_and_marks_reported(
        self, db_session, session_factory, make_user, make_transaction
    ):
        now = utcnow()
        helmet = await make_user()
        vaski = await make_user("vaski.555", "pw")
        first = await make_transaction(helmet, paid_at=now - timedelta(days=1))
        second = await make_transaction(vaski, paid_at=now - timedelta(days=1))
        for transaction in (first, second):
            await transaction_service.mark_fines_updated(db_session, transaction)
        await db_session.commit()

        report = await monitor_service.report_unresolved_transactions(
            session_factory, interval=4, now=now
        )

        assert report.total == 2
        assert set(report.by_driver) == {"helmet", "vaski"}
        assert report.by_driver["vaski"][0]["transaction_id"] == second.transaction_id

        again = await monitor_service.report_unresolved_transactions(
            session_factory, interval=4, now=now + timedelta(hours=1)
        )
        assert again.total == 0


class TestCli:

    def test_parser(self):
        parser = build_parser()

        args = parser.parse_args(["retry", "--min-paid-age", "300"])
        assert args.command == "retry"
        assert args.min_paid_age == 300

        assert args.expire_hours == 3

        args = parser.parse_args(["report"])
        assert args.command == "report"
        assert args.interval == 4
