"""
Tests for patron login and library cards.

These tests verify:
  - Login through the ILS creates the user and a library card
  - Rejected credentials return 401 without creating anything
  - Repeated logins reuse the user and update the current credentials
  - Protected endpoints require a valid token
  - Linking, listing and activating library cards
"""

import uuid

from sqlalchemy import func, select

from finepay.models.library_card import LibraryCard
from finepay.models.user import User
from finepay.security import decrypt_value


class TestLogin:

    async def test_login_creates_user_and_card(self, client, db_session):
        response = await client.post(
            "/auth/login",
            json={"cat_username": "helmet.1234567", "password": "1234"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["token_type"] == "bearer"
        user = await db_session.get(User, uuid.UUID(data["user_id"]))
        assert user.cat_username == "helmet.1234567"
        assert decrypt_value(user.cat_password_encrypted) == "1234"
        cards = (await db_session.execute(select(LibraryCard))).scalars().all()
        assert [c.cat_username for c in cards] == ["helmet.1234567"]

    async def test_rejected_credentials(self, client, db_session):
        response = await client.post(
            "/auth/login",
            json={"cat_username": "helmet.1234567", "password": "wrong"},
        )

        assert response.status_code == 401
        assert response.json()["error_type"] == "invalid_credentials"
        assert await db_session.scalar(select(func.count()).select_from(User)) == 0

    async def test_password_change_adds_card_and_reuses_user(self, client, fake_ils, db_session):
        first = await client.post(
            "/auth/login", json={"cat_username": "helmet.1234567", "password": "1234"}
        )
        fake_ils.accounts["helmet.1234567"] = "5678"
        second = await client.post(
            "/auth/login", json={"cat_username": "helmet.1234567", "password": "5678"}
        )

        assert first.json()["user_id"] == second.json()["user_id"]
        assert await db_session.scalar(select(func.count()).select_from(User)) == 1
        assert await db_session.scalar(select(func.count()).select_from(LibraryCard)) == 2

    async def test_missing_token(self, client):
        response = await client.get("/payments")
        assert response.status_code == 401

    async def test_invalid_token(self, client):
        client.headers["Authorization"] = "Bearer not-a-jwt"
        response = await client.get("/payments")
        assert response.status_code == 401


class TestLibraryCards:

    async def test_add_and_list(self, authenticated_client, fake_ils):
        fake_ils.accounts["vaski.555"] = "pw"

        response = await authenticated_client.post(
            "/library-cards",
            json={"cat_username": "vaski.555", "password": "pw", "card_name": "Work"},
        )
        assert response.status_code == 201
        assert "password" not in response.text

        cards = (await authenticated_client.get("/library-cards")).json()
        assert [c["cat_username"] for c in cards] == ["helmet.1234567", "vaski.555"]

    async def test_add_rejected_by_ils(self, authenticated_client):
        response = await authenticated_client.post(
            "/library-cards", json={"cat_username": "vaski.555", "password": "pw"}
        )
        assert response.status_code == 401

    async def test_card_of_another_user(self, client, fake_ils):
        fake_ils.accounts["vaski.555"] = "pw"
        await client.post("/auth/login", json={"cat_username": "vaski.555", "password": "pw"})

        login = await client.post(
            "/auth/login", json={"cat_username": "helmet.1234567", "password": "1234"}
        )
        client.headers["Authorization"] = f"Bearer {login.json()['token']}"
        response = await client.post(
            "/library-cards", json={"cat_username": "vaski.555", "password": "pw"}
        )

        assert response.status_code == 409
        assert response.json()["error_type"] == "duplicate_library_card"

    async def test_activate(self, authenticated_client, fake_ils):
        fake_ils.accounts["vaski.555"] = "pw"
        card = await authenticated_client.post(
            "/library-cards", json={"cat_username": "vaski.555", "password": "pw"}
        )

        response = await authenticated_client.post(
            f"/library-cards/{card.json()['id']}/activate"
        )

        assert response.status_code == 200
        assert response.json()["cat_username"] == "vaski.555"

    async def test_activate_unknown_card(self, authenticated_client):
        response = await authenticated_client.post(f"/library-cards/{uuid.uuid4()}/activate")
        assert response.status_code == 403
