"""API tests for /auth."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from control_plane.auth.jwt import (
    ACCESS,
    REFRESH,
    create_access_token,
    create_refresh_token,
    decode_token,
)
from control_plane.auth.password import hash_password, verify_password
from control_plane.db.models import (
    Partner,
    PartnerCredits,
    PartnerMember,
    User,
    Workspace,
    WorkspaceCredits,
    WorkspaceMember,
)
from control_plane.errors import AuthenticationError

SIGNUP = {
    "email": "Founder@Example.com",
    "password": "correct-horse",
    "full_name": "Fran Founder",
    "company_name": "Bright Calls",
}


class TestPasswords:
    def test_hash_and_verify(self):
        hashed = hash_password("s3cret-pass")
        assert hashed != "s3cret-pass"
        assert verify_password("s3cret-pass", hashed)
        assert not verify_password("wrong", hashed)

    def test_account_without_password_never_matches(self):
        assert not verify_password("anything", None)


class TestTokens:
    def test_round_trip_claims(self, tenant):
        payload = decode_token(create_access_token(tenant.user_id), expected_type=ACCESS)
        assert payload.sub == str(tenant.user_id)

    def test_wrong_type(self, tenant):
        with pytest.raises(AuthenticationError, match="Invalid token type"):
            decode_token(create_refresh_token(tenant.user_id), expected_type=ACCESS)

    def test_expired(self, tenant):
        token = create_access_token(tenant.user_id, expires_delta=timedelta(seconds=-1))
        with pytest.raises(AuthenticationError):
            decode_token(token)


# =============================================================================
# Signup / Login
# =============================================================================


class TestSignup:
    """Tests for POST /auth/signup."""

    async def test_creates_partner_and_default_workspace(self, client, db):
        response = await client.post("/auth/signup", json=SIGNUP)

        assert response.status_code == 201
        body = response.json()
        assert body["user"]["email"] == "founder@example.com"
        assert body["tokens"]["token_type"] == "bearer"

        partner = (await db.execute(select(Partner))).scalar_one()
        assert partner.slug == "bright-calls"
        workspace = (await db.execute(select(Workspace))).scalar_one()
        assert workspace.slug == "default"
        assert workspace.partner_id == partner.id

        member = (await db.execute(select(PartnerMember))).scalar_one()
        assert member.role == "owner"
        ws_member = (await db.execute(select(WorkspaceMember))).scalar_one()
        assert ws_member.role == "owner"
        assert (await db.execute(select(PartnerCredits))).scalar_one().balance_cents == 0
        assert (await db.execute(select(WorkspaceCredits))).scalar_one().balance_cents == 0

    async def test_duplicate_email(self, client, db):
        await client.post("/auth/signup", json=SIGNUP)
        response = await client.post(
            "/auth/signup", json={**SIGNUP, "email": "founder@example.com"}
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "Email already registered"
        assert len((await db.execute(select(User))).scalars().all()) == 1

    async def test_partner_slug_is_made_unique(self, client, db, make):
        await make.partner(name="Bright Calls", slug="bright-calls")
        await db.commit()

        await client.post("/auth/signup", json=SIGNUP)

        slugs = (await db.execute(select(Partner.slug))).scalars().all()
        assert sorted(slugs) == ["bright-calls", "bright-calls-2"]

    async def test_short_password(self, client):
        response = await client.post("/auth/signup", json={**SIGNUP, "password": "short"})
        assert response.status_code == 422


class TestLogin:
    """Tests for POST /auth/login."""

    @pytest.fixture
    async def account(self, db, make):
        user = await make.user(email="ana@example.com", password_hash=hash_password("pa55word!"))
        await db.commit()
        return user

    async def test_valid_credentials(self, client, account):
        response = await client.post(
            "/auth/login", json={"email": "ANA@example.com", "password": "pa55word!"}
        )

        assert response.status_code == 200
        tokens = response.json()["tokens"]
        assert decode_token(tokens["access_token"], expected_type=ACCESS).sub == str(account.id)
        assert account.last_login_at is not None

    async def test_wrong_password(self, client, account):
        response = await client.post(
            "/auth/login", json={"email": "ana@example.com", "password": "nope-nope"}
        )
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid email or password"

    async def test_unknown_email(self, client):
        response = await client.post(
            "/auth/login", json={"email": "ghost@example.com", "password": "whatever1"}
        )
        assert response.status_code == 401


class TestRefresh:
    async def test_issues_new_pair(self, client, tenant):
        response = await client.post(
            "/auth/refresh", json={"refresh_token": create_refresh_token(tenant.user_id)}
        )

        assert response.status_code == 200
        payload = decode_token(response.json()["refresh_token"], expected_type=REFRESH)
        assert payload.sub == str(tenant.user_id)

    async def test_access_token_is_rejected(self, client, tenant):
        response = await client.post(
            "/auth/refresh", json={"refresh_token": create_access_token(tenant.user_id)}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTHENTICATION_ERROR"


# =============================================================================
# /auth/me
# =============================================================================


class TestMe:
    """Tests for GET /auth/me."""

    async def test_returns_partner_and_workspaces(self, client, tenant):
        response = await client.get("/auth/me", headers=tenant.headers)

        assert response.status_code == 200
        body = response.json()
        assert body["user"]["email"] == "owner@example.com"
        assert body["partner"]["id"] == str(tenant.partner_id)
        assert body["partner"]["role"] == "owner"
        assert [(w["slug"], w["role"]) for w in body["workspaces"]] == [("main", "owner")]

    async def test_requires_token(self, client):
        response = await client.get("/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Not authenticated"

    async def test_garbage_token(self, client):
        response = await client.get("/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401
