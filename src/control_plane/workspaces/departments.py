"""Department API routes."""

import logging
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.audit import record_audit
from control_plane.auth.context import WorkspaceContext, require_workspace_permission
from control_plane.auth.permissions import Permission
from control_plane.db.database import get_db
from control_plane.db.models import Department, utcnow
from control_plane.errors import ConflictError, NotFoundError
from control_plane.pagination import PageParams, PaginationMeta, page_params, paginate
from control_plane.slugs import slugify

logger = logging.getLogger("control-plane.departments")

router = APIRouter(prefix="/w/{workspace_slug}/departments", tags=["Departments"])


class DepartmentCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    slug: str | None = Field(None, max_length=100)
    description: str | None = None


class DepartmentUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = None


class DepartmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    name: str
    slug: str
    description: str | None
    created_at: datetime


class DepartmentListResponse(BaseModel):
    data: list[DepartmentResponse]
    meta: PaginationMeta


async def _get_department(
    db: AsyncSession, ctx: WorkspaceContext, department_id: UUID
) -> Department:
    department = (
        await db.execute(
            select(Department)
            .where(Department.id == department_id)
            .where(Department.workspace_id == ctx.workspace.id)
            .where(Department.deleted_at.is_(None))
        )
    ).scalar_one_or_none()
    if department is None:
        raise NotFoundError("Department")
    return department


@router.get("", response_model=DepartmentListResponse)
async def list_departments(
    params: PageParams = Depends(page_params),
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.DEPARTMENT_READ)),
    db: AsyncSession = Depends(get_db),
):
    query = (
        select(Department)
        .where(Department.workspace_id == ctx.workspace.id)
        .where(Department.deleted_at.is_(None))
        .order_by(Department.name)
    )
    departments, meta = await paginate(db, query, params)
    return DepartmentListResponse(
        data=[DepartmentResponse.model_validate(d) for d in departments], meta=meta
    )


@router.post("", response_model=DepartmentResponse, status_code=status.HTTP_201_CREATED)
async def create_department(
    request: DepartmentCreate,
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.DEPARTMENT_MANAGE)),
    db: AsyncSession = Depends(get_db),
):
    slug = slugify(request.slug or request.name, max_length=100)
    taken = (
        await db.execute(
            select(Department.id)
            .where(Department.workspace_id == ctx.workspace.id)
            .where(Department.slug == slug)
            .where(Department.deleted_at.is_(None))
        )
    ).first()
    if taken is not None:
        raise ConflictError(f"A department with slug '{slug}' already exists")

    department = Department(
        workspace_id=ctx.workspace.id,
        name=request.name,
        slug=slug,
        description=request.description,
    )
    db.add(department)
    await db.flush()
    await record_audit(
        db,
        action="department.created",
        entity_type="department",
        entity_id=department.id,
        user_id=ctx.user.id,
        workspace_id=ctx.workspace.id,
        new_values={"name": department.name, "slug": slug},
    )
    await db.flush()
    await db.refresh(department)
    return DepartmentResponse.model_validate(department)


@router.get("/{department_id}", response_model=DepartmentResponse)
async def get_department(
    department_id: UUID,
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.DEPARTMENT_READ)),
    db: AsyncSession = Depends(get_db),
):
    return DepartmentResponse.model_validate(await _get_department(db, ctx, department_id))


@router.patch("/{department_id}", response_model=DepartmentResponse)
async def update_department(
    department_id: UUID,
    request: DepartmentUpdate,
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.DEPARTMENT_MANAGE)),
    db: AsyncSession = Depends(get_db),
):
    department = await _get_department(db, ctx, department_id)
    for key, value in request.model_dump(exclude_unset=True).items():
        setattr(department, key, value)
    await db.flush()
    await db.refresh(department)
    return DepartmentResponse.model_validate(department)


@router.delete("/{department_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_department(
    department_id: UUID,
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.DEPARTMENT_MANAGE)),
    db: AsyncSession = Depends(get_db),
):
    department = await _get_department(db, ctx, department_id)
    department.deleted_at = utcnow()
    await record_audit(
        db,
        action="department.deleted",
        entity_type="department",
        entity_id=department.id,
        user_id=ctx.user.id,
        workspace_id=ctx.workspace.id,
    )
    await db.flush()
