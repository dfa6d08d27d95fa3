"""Authentication API routes.

Provides signup, login, token refresh and the ``/me`` context endpoint.
"""

import logging
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.audit import record_audit
from control_plane.auth.context import AuthContext, get_auth_context
from control_plane.auth.jwt import (
    REFRESH,
    TokenPair,
    create_token_pair,
    decode_token,
)
from control_plane.auth.password import MIN_PASSWORD_LENGTH, hash_password, verify_password
from control_plane.db.database import get_db
from control_plane.db.models import (
    Partner,
    PartnerCredits,
    PartnerMember,
    PartnerRole,
    User,
    Workspace,
    WorkspaceCredits,
    WorkspaceMember,
    WorkspaceRole,
    utcnow,
)
from control_plane.slugs import slugify

logger = logging.getLogger("control-plane.auth")

router = APIRouter(prefix="/auth", tags=["Authentication"])


# =============================================================================
# Request/Response Models
# =============================================================================


class SignupRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH, max_length=128)
    full_name: str | None = Field(None, max_length=255)
    company_name: str = Field(..., min_length=1, max_length=255)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    full_name: str | None
    is_super_admin: bool
    created_at: datetime


class PartnerSummary(BaseModel):
    id: UUID
    name: str
    slug: str
    plan_tier: str
    role: str


class WorkspaceSummary(BaseModel):
    id: UUID
    name: str
    slug: str
    role: str


class AuthResponse(BaseModel):
    user: UserResponse
    tokens: TokenPair


class MeResponse(BaseModel):
    user: UserResponse
    partner: PartnerSummary | None
    workspaces: list[WorkspaceSummary]


# =============================================================================
# Routes
# =============================================================================


async def _unique_partner_slug(db: AsyncSession, name: str) -> str:
    base = slugify(name)
    slug = base
    suffix = 1
    while (await db.execute(select(Partner.id).where(Partner.slug == slug))).first():
        suffix += 1
        slug = f"{base}-{suffix}"
    return slug


@router.post("/signup", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def signup(request: SignupRequest, db: AsyncSession = Depends(get_db)):
    """Create an account with its own partner and a default workspace.

    The new user owns both, and both start with an empty credit balance.
    """
    email = request.email.lower()
    existing = await db.execute(select(User).where(User.email == email))
    if existing.scalar_one_or_none():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already registered",
        )

    user = User(
        email=email,
        password_hash=hash_password(request.password),
        full_name=request.full_name,
    )
    db.add(user)

    partner = Partner(
        name=request.company_name,
        slug=await _unique_partner_slug(db, request.company_name),
    )
    db.add(partner)
    await db.flush()

    db.add(PartnerMember(partner_id=partner.id, user_id=user.id, role=PartnerRole.OWNER))
    db.add(PartnerCredits(partner_id=partner.id))

    workspace = Workspace(partner_id=partner.id, name="Default", slug="default")
    db.add(workspace)
    await db.flush()

    db.add(
        WorkspaceMember(workspace_id=workspace.id, user_id=user.id, role=WorkspaceRole.OWNER)
    )
    db.add(WorkspaceCredits(workspace_id=workspace.id))
    await record_audit(
        db,
        action="user.signup",
        entity_type="user",
        entity_id=user.id,
        user_id=user.id,
        partner_id=partner.id,
    )
    await db.flush()

    logger.info(f"New signup {user.id} with partner {partner.slug}")
    return AuthResponse(
        user=UserResponse.model_validate(user),
        tokens=create_token_pair(user.id),
    )


@router.post("/login", response_model=AuthResponse)
async def login(request: LoginRequest, db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(User).where(User.email == request.email.lower()))
    user = result.scalar_one_or_none()

    if user is None or not verify_password(request.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    user.last_login_at = utcnow()
    return AuthResponse(
        user=UserResponse.model_validate(user),
        tokens=create_token_pair(user.id),
    )


@router.post("/refresh", response_model=TokenPair)
async def refresh(request: RefreshRequest, db: AsyncSession = Depends(get_db)):
    """Exchange a refresh token for a new token pair."""
    payload = decode_token(request.refresh_token, expected_type=REFRESH)
    user = (
        await db.execute(select(User).where(User.id == UUID(payload.sub)))
    ).scalar_one_or_none()
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    return create_token_pair(user.id)


@router.get("/me", response_model=MeResponse)
async def me(auth: AuthContext = Depends(get_auth_context)):
    partner = None
    if auth.partner is not None:
        partner = PartnerSummary(
            id=auth.partner.id,
            name=auth.partner.name,
            slug=auth.partner.slug,
            plan_tier=auth.partner.plan_tier,
            role=auth.partner_role,
        )
    return MeResponse(
        user=UserResponse.model_validate(auth.user),
        partner=partner,
        workspaces=[
            WorkspaceSummary(
                id=access.workspace.id,
                name=access.workspace.name,
                slug=access.workspace.slug,
                role=access.role,
            )
            for access in auth.workspaces
        ],
    )
