"""
Tests for the transaction state machine.

These tests verify:
  - Every status has an entry in the transition table
  - Terminal statuses allow no further transitions
  - Edges outside the table raise InvalidTransitionError and change nothing
  - A repeated gateway confirmation is a no-op
  - Entering REGISTRATION_FAILED releases the registration lock
  - The status predicates (in progress, needs registration, registered)
"""

from datetime import timedelta

import pytest

from finepay.database import utcnow
from finepay.exceptions import InvalidTransitionError
from finepay.models.transaction import Transaction, TransactionStatus
from finepay.services import event_log_service, transaction_service
from finepay.services.transaction_service import ALLOWED_TRANSITIONS, can_transition

S = TransactionStatus


class TestTransitionTable:

    def test_every_status_has_an_entry(self):
        assert set(ALLOWED_TRANSITIONS) == set(TransactionStatus)
        assert len(TransactionStatus) == 9

    @pytest.mark.parametrize(
        "status", [S.COMPLETE, S.CANCELED, S.PAYMENT_FAILED, S.REGISTRATION_RESOLVED]
    )
    def test_terminal_statuses(self, status):
        assert all(not can_transition(status, new) for new in TransactionStatus)

    def test_progress_cannot_skip_payment(self):
        assert not can_transition(S.PROGRESS, S.COMPLETE)
        assert not can_transition(S.PROGRESS, S.REGISTRATION_FAILED)
        assert can_transition(S.PROGRESS, S.PAID)

    def test_fines_updated_needs_resolution(self):
        assert not can_transition(S.FINES_UPDATED, S.PAID)
        assert not can_transition(S.FINES_UPDATED, S.REGISTRATION_FAILED)
        assert can_transition(S.FINES_UPDATED, S.REGISTRATION_RESOLVED)


class TestPredicates:

    @pytest.mark.parametrize("status", list(TransactionStatus))
    def test_in_progress(self, status):
        transaction = Transaction(status=status)
        assert transaction.is_in_progress() == (
            status in (S.PROGRESS, S.REGISTRATION_FAILED)
        )

    def test_paid_needs_registration_but_is_not_in_progress(self):
        transaction = Transaction(status=S.PAID)
        assert transaction.needs_registration()
        assert not transaction.is_in_progress()
        assert not transaction.is_registered()


class TestTransitions:

    async def test_create_starts_in_progress(self, db_session, make_user, make_transaction):
        user = await make_user()
        transaction = await make_transaction(user)

        assert transaction.status == S.PROGRESS
        assert transaction.status_message == "started"
        assert transaction.driver == "helmet"
        events = await event_log_service.get_events(db_session, transaction.id)
        assert [e.message for e in events] == ["Transaction created"]

    async def test_invalid_edge_raises_and_changes_nothing(
        self, db_session, make_user, make_transaction
    ):
        user = await make_user()
        transaction = await make_transaction(user, paid_at=utcnow())

        with pytest.raises(InvalidTransitionError) as exc_info:
            await transaction_service.mark_canceled(db_session, transaction)

        assert exc_info.value.current == "paid"
        assert exc_info.value.requested == "canceled"
        assert transaction.status == S.PAID
        events = await event_log_service.get_events(db_session, transaction.id)
        assert len(events) == 2

    async def test_repeated_payment_confirmation_is_noop(
        self, db_session, make_user, make_transaction
    ):
        user = await make_user()
        paid_at = utcnow() - timedelta(minutes=1)
        transaction = await make_transaction(user, paid_at=paid_at)

        assert await transaction_service.mark_paid(db_session, transaction) is False
        assert transaction.paid_at == paid_at
        events = await event_log_service.get_events(db_session, transaction.id)
        assert [e.data["status"] for e in events] == ["progress", "paid"]

    async def test_registration_failure_releases_lock(
        self, db_session, make_user, make_transaction
    ):
        user = await make_user()
        transaction = await make_transaction(user, paid_at=utcnow())
        assert await transaction_service.acquire_registration_lock(db_session, transaction)
        assert transaction.registration_started_at is not None

        await transaction_service.mark_registration_failed(db_session, transaction, "timeout")

        assert transaction.status == S.REGISTRATION_FAILED
        assert transaction.status_message == "timeout"
        assert transaction.registration_started_at is None

    async def test_status_message_is_truncated(self, db_session, make_user, make_transaction):
        user = await make_user()
        transaction = await make_transaction(user, paid_at=utcnow())

        await transaction_service.mark_registration_failed(db_session, transaction, "x" * 400)

        assert len(transaction.status_message) == 255


class TestRegistrationLock:

    async def test_second_acquire_within_ttl_fails(
        self, db_session, make_user, make_transaction
    ):
        user = await make_user()
        transaction = await make_transaction(user, paid_at=utcnow())
        now = utcnow()

        assert await transaction_service.acquire_registration_lock(db_session, transaction, now=now)
        assert not await transaction_service.acquire_registration_lock(
            db_session, transaction, now=now + timedelta(seconds=60)
        )

    async def test_stale_lock_can_be_taken_over(self, db_session, make_user, make_transaction):
        user = await make_user()
        transaction = await make_transaction(user, paid_at=utcnow())
        now = utcnow()

        assert await transaction_service.acquire_registration_lock(db_session, transaction, now=now)
        later = now + timedelta(seconds=121)
        assert await transaction_service.acquire_registration_lock(
            db_session, transaction, now=later
        )
        assert transaction.registration_started_at == later

    async def test_unpaid_transaction_cannot_be_locked(
        self, db_session, make_user, make_transaction
    ):
        user = await make_user()
        transaction = await make_transaction(user)

        assert not await transaction_service.acquire_registration_lock(db_session, transaction)
        assert transaction.registration_started_at is None
