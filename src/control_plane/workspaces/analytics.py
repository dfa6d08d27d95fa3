"""Workspace analytics: daily usage trends and per-agent performance."""

from collections import defaultdict
from datetime import timedelta
from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.auth.context import WorkspaceContext, require_workspace_permission
from control_plane.auth.permissions import Permission
from control_plane.db.database import get_db
from control_plane.db.models import AIAgent, Conversation, ConversationStatus, utcnow

router = APIRouter(prefix="/w/{workspace_slug}/analytics", tags=["Analytics"])


class DailyUsage(BaseModel):
    date: str
    conversations: int
    minutes: float
    cost: float


class UsageTrendsResponse(BaseModel):
    trends: list[DailyUsage]
    days: int


class AgentPerformance(BaseModel):
    id: UUID
    name: str
    provider: str
    is_active: bool
    sync_status: str
    total_calls: int
    completed_calls: int
    # Percent of calls that completed, rounded to a whole number
    success_rate: int
    # Minutes per call
    avg_duration: float
    total_minutes: float
    total_cost: float


class AgentPerformanceResponse(BaseModel):
    agents: list[AgentPerformance]


@router.get("/usage-trends", response_model=UsageTrendsResponse)
async def get_usage_trends(
    days: int = Query(30, ge=1, le=365),
    department_id: UUID | None = Query(None),
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.CONVERSATION_READ)),
    db: AsyncSession = Depends(get_db),
):
    """Conversations, minutes and cost per UTC day over the last ``days`` days.

    Days without calls are omitted.
    """
    query = (
        select(Conversation.created_at, Conversation.duration_seconds, Conversation.total_cost)
        .where(Conversation.workspace_id == ctx.workspace.id)
        .where(Conversation.created_at >= utcnow() - timedelta(days=days))
    )
    if department_id is not None:
        query = query.join(AIAgent, AIAgent.id == Conversation.agent_id).where(
            AIAgent.department_id == department_id
        )

    conversations: dict[str, int] = defaultdict(int)
    seconds: dict[str, int] = defaultdict(int)
    cost: dict[str, Decimal] = defaultdict(Decimal)
    for created_at, duration_seconds, total_cost in (await db.execute(query)).all():
        day = created_at.date().isoformat()
        conversations[day] += 1
        seconds[day] += duration_seconds or 0
        cost[day] += total_cost or 0

    trends = [
        DailyUsage(
            date=day,
            conversations=conversations[day],
            minutes=round(seconds[day] / 60, 1),
            cost=round(float(cost[day]), 2),
        )
        for day in sorted(conversations)
    ]
    return UsageTrendsResponse(trends=trends, days=days)


@router.get("/agent-performance", response_model=AgentPerformanceResponse)
async def get_agent_performance(
    department_id: UUID | None = Query(None),
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.CONVERSATION_READ)),
    db: AsyncSession = Depends(get_db),
):
    """Lifetime call totals for each live agent, including agents with no calls."""
    completed = case((Conversation.status == ConversationStatus.COMPLETED, 1), else_=0)
    query = (
        select(
            AIAgent,
            func.count(Conversation.id),
            func.coalesce(func.sum(completed), 0),
            func.coalesce(func.sum(Conversation.duration_seconds), 0),
            func.coalesce(func.sum(Conversation.total_cost), 0),
        )
        .outerjoin(Conversation, Conversation.agent_id == AIAgent.id)
        .where(AIAgent.workspace_id == ctx.workspace.id)
        .where(AIAgent.deleted_at.is_(None))
        .group_by(AIAgent.id)
        .order_by(AIAgent.created_at)
    )
    if department_id is not None:
        query = query.where(AIAgent.department_id == department_id)

    agents = []
    for agent, total, done, seconds, cost in (await db.execute(query)).all():
        minutes = seconds / 60
        agents.append(
            AgentPerformance(
                id=agent.id,
                name=agent.name,
                provider=agent.provider,
                is_active=agent.is_active,
                sync_status=agent.sync_status,
                total_calls=total,
                completed_calls=done,
                success_rate=round(done / total * 100) if total else 0,
                avg_duration=round(minutes / total, 1) if total else 0.0,
                total_minutes=round(minutes, 1),
                total_cost=round(float(cost), 2),
            )
        )
    return AgentPerformanceResponse(agents=agents)
