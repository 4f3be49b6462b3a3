"""
Tests for recovering the ILS login of a transaction's owner.

These tests verify:
  - The current card is used when it matches the transaction
  - A stored card with the transaction's username is used when the
    current card changed
  - Usernames match case-insensitively
  - PatronLoginError when nothing logs in
"""

import pytest

from finepay.exceptions import PatronLoginError
from finepay.models.library_card import LibraryCard
from finepay.security import encrypt_value
from finepay.services import patron_service


class TestResolvePatron:

    async def test_current_credentials(self, db_session, fake_ils, make_user, make_transaction):
        user = await make_user()
        transaction = await make_transaction(user)

        patron = await patron_service.resolve_patron(db_session, fake_ils, transaction)

        assert patron.cat_username == "helmet.1234567"
        assert fake_ils.call_names() == ["login"]

    async def test_falls_back_to_second_card(
        self, db_session, fake_ils, make_user, make_transaction
    ):
        user = await make_user()
        transaction = await make_transaction(user)

        # Patron switched to another card and re-added the old one with a new password
        fake_ils.accounts["vaski.555"] = "other"
        fake_ils.accounts["helmet.1234567"] = "new-password"
        user.cat_username = "vaski.555"
        user.cat_password_encrypted = encrypt_value("other")
        db_session.add(LibraryCard(
            user_id=user.id,
            cat_username="helmet.1234567",
            cat_password_encrypted=encrypt_value("new-password"),
        ))
        await db_session.commit()

        patron = await patron_service.resolve_patron(db_session, fake_ils, transaction)

        assert patron.cat_username == "helmet.1234567"
        assert patron.cat_password == "new-password"
        # The first stored card still has the old password
        assert fake_ils.call_names() == ["login", "login"]

    async def test_username_match_is_case_insensitive(
        self, db_session, fake_ils, make_user, make_transaction
    ):
        user = await make_user()
        transaction = await make_transaction(user)
        transaction.cat_username = "HELMET.1234567"
        await db_session.commit()

        patron = await patron_service.resolve_patron(db_session, fake_ils, transaction)
        assert patron.cat_username == "helmet.1234567"

    async def test_no_working_credentials(
        self, db_session, fake_ils, make_user, make_transaction
    ):
        user = await make_user()
        transaction = await make_transaction(user)
        fake_ils.accounts.clear()

        with pytest.raises(PatronLoginError):
            await patron_service.resolve_patron(db_session, fake_ils, transaction)
