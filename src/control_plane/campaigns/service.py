"""Campaign lifecycle and the recipient dial queue.

Calls are placed in batches bounded by the campaign's concurrency limit.
Each call-ended webhook settles one recipient and pulls the next batch, so
the queue drains without a background scheduler.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

import httpx
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.campaigns.business_hours import is_within_business_hours
from control_plane.db.models import (
    AIAgent,
    CallCampaign,
    CallOutcome,
    CallRecipient,
    CampaignStatus,
    RecipientStatus,
    utcnow,
)
from control_plane.errors import ValidationError
from control_plane.integrations.calls import place_outbound_call, resolve_outbound_caller

logger = logging.getLogger("control-plane.campaigns")

# E.164: plus sign, no leading zero, 7-15 digits
E164_REGEX = re.compile(r"^\+[1-9]\d{6,14}$")

MAX_RECIPIENTS_PER_IMPORT = 10000

RETELL_SUCCESS_REASONS = frozenset(
    {
        "agent_hangup",
        "user_hangup",
        "end_call_function_called",
        "voicemail_reached",
        "max_duration_reached",
    }
)

VAPI_SUCCESS_REASONS = frozenset(
    {
        "customer-ended-call",
        "assistant-ended-call",
        "assistant-said-end-call-phrase",
        "exceeded-max-duration",
        "voicemail",
    }
)


def validate_phone_e164(phone: str) -> bool:
    return bool(E164_REGEX.match(phone))


@dataclass
class CallEndOutcome:
    """How a campaign call finished, as reported by the provider."""

    success: bool
    outcome: CallOutcome
    duration_seconds: int | None = None
    error: str | None = None


@dataclass
class NextCallsResult:
    started: int = 0
    failed: int = 0
    remaining: int = 0
    concurrency_hit: bool = False
    outside_business_hours: bool = False
    errors: list[str] = field(default_factory=list)


# =============================================================================
# Outcome Mapping
# =============================================================================


RETELL_DIAL_OUTCOMES = {
    "invalid_destination": CallOutcome.INVALID_NUMBER,
    "dial_no_answer": CallOutcome.NO_ANSWER,
    "dial_busy": CallOutcome.BUSY,
    "dial_rejected": CallOutcome.REJECTED,
}


def determine_retell_outcome(
    call_status: str | None, disconnection_reason: str | None
) -> tuple[CallOutcome, bool]:
    """Map Retell's call status and disconnection reason to (outcome, success)."""
    dial_outcome = RETELL_DIAL_OUTCOMES.get(disconnection_reason or "")
    if call_status == "not_connected":
        outcome = dial_outcome or CallOutcome.NOT_CONNECTED
    elif call_status == "ended":
        outcome = (
            CallOutcome.VOICEMAIL
            if disconnection_reason == "voicemail_reached"
            else CallOutcome.ANSWERED
        )
    elif call_status == "error":
        outcome = CallOutcome.ERROR
    else:
        # Still registered/ongoing or a status Retell added later
        outcome = dial_outcome or CallOutcome.UNKNOWN

    success = call_status == "ended" and (
        not disconnection_reason or disconnection_reason in RETELL_SUCCESS_REASONS
    )
    return outcome, success


def determine_vapi_outcome(ended_reason: str | None) -> tuple[CallOutcome, bool]:
    """Map VAPI's ``endedReason`` to (outcome, success)."""
    reason = ended_reason or ""
    if reason in VAPI_SUCCESS_REASONS:
        outcome = CallOutcome.VOICEMAIL if reason == "voicemail" else CallOutcome.ANSWERED
        return outcome, True
    if "did-not-answer" in reason:
        return CallOutcome.NO_ANSWER, False
    if "busy" in reason:
        return CallOutcome.BUSY, False
    if "invalid" in reason:
        return CallOutcome.INVALID_NUMBER, False
    if "error" in reason or "failed" in reason:
        return CallOutcome.ERROR, False
    return CallOutcome.NOT_CONNECTED, False


# =============================================================================
# Queries
# =============================================================================


async def count_recipients(db: AsyncSession, campaign_id: UUID, status: str) -> int:
    return (
        await db.execute(
            select(func.count())
            .select_from(CallRecipient)
            .where(CallRecipient.campaign_id == campaign_id)
            .where(CallRecipient.call_status == status)
        )
    ).scalar_one()


def _complete(campaign: CallCampaign, now: datetime | None = None) -> None:
    campaign.status = CampaignStatus.COMPLETED
    campaign.completed_at = now or utcnow()
    campaign.pending_calls = 0
    logger.info(f"Campaign {campaign.id} completed")


# =============================================================================
# Recipients
# =============================================================================


async def add_recipients(
    db: AsyncSession, campaign: CallCampaign, recipients: list[dict[str, Any]]
) -> int:
    """Validate and append recipients to a campaign.

    Raises:
        ValidationError: On an empty or oversized list, a non-E.164 number,
            a number repeated within the import, or a finished campaign.
    """
    if campaign.status in (CampaignStatus.COMPLETED, CampaignStatus.CANCELLED):
        raise ValidationError("Cannot add recipients to a completed or cancelled campaign")
    if not recipients:
        raise ValidationError("At least one recipient is required")
    if len(recipients) > MAX_RECIPIENTS_PER_IMPORT:
        raise ValidationError(
            f"Maximum {MAX_RECIPIENTS_PER_IMPORT} recipients allowed per import"
        )

    seen: set[str] = set()
    for i, recipient in enumerate(recipients):
        phone = (recipient.get("phone_number") or "").strip()
        if not validate_phone_e164(phone):
            raise ValidationError(
                f"Recipient {i + 1}: phone must be in E.164 format "
                f"(e.g., +14155551234). Invalid: {phone}"
            )
        if phone in seen:
            raise ValidationError(f"Duplicate phone number: {phone}")
        seen.add(phone)

    for recipient in recipients:
        db.add(
            CallRecipient(
                campaign_id=campaign.id,
                workspace_id=campaign.workspace_id,
                phone_number=recipient["phone_number"].strip(),
                first_name=recipient.get("first_name"),
                last_name=recipient.get("last_name"),
                email=recipient.get("email"),
                company=recipient.get("company"),
            )
        )

    campaign.total_recipients += len(recipients)
    campaign.pending_calls += len(recipients)
    await db.flush()
    return len(recipients)


# =============================================================================
# Lifecycle
# =============================================================================


async def start_campaign(
    db: AsyncSession,
    campaign: CallCampaign,
    http_client: httpx.AsyncClient | None = None,
) -> NextCallsResult:
    """Activate a draft/ready campaign and dial the first batch.

    A paused campaign resumes through the same path.

    Raises:
        ValidationError: If the campaign can't be started.
    """
    status = campaign.status
    if status == CampaignStatus.ACTIVE:
        raise ValidationError("Campaign is already active")
    if status in (CampaignStatus.COMPLETED, CampaignStatus.CANCELLED):
        raise ValidationError("Cannot start a completed or cancelled campaign")
    if status == CampaignStatus.SCHEDULED:
        raise ValidationError("Scheduled campaigns start automatically at the scheduled time")
    if status not in (CampaignStatus.DRAFT, CampaignStatus.READY, CampaignStatus.PAUSED):
        raise ValidationError(f"Cannot start campaign with status: {status}")

    agent = await db.get(AIAgent, campaign.agent_id)
    if agent is None or not agent.is_active or agent.deleted_at is not None:
        raise ValidationError("Campaign agent is not active")
    if not agent.external_agent_id:
        raise ValidationError("Agent has not been synced with the voice provider")
    if await resolve_outbound_caller(db, agent) is None:
        raise ValidationError("No outbound phone number configured for the agent")

    pending = await count_recipients(db, campaign.id, RecipientStatus.PENDING)
    if pending == 0:
        raise ValidationError("No pending recipients to call. Add recipients first.")

    campaign.status = CampaignStatus.ACTIVE
    campaign.started_at = campaign.started_at or utcnow()
    campaign.pending_calls = pending
    await db.flush()
    logger.info(f"Campaign {campaign.id} started with {pending} pending recipients")

    return await start_next_calls(db, campaign.id, http_client=http_client)


async def pause_campaign(db: AsyncSession, campaign: CallCampaign) -> None:
    """Stop dialing new recipients; calls already live finish normally."""
    if campaign.status != CampaignStatus.ACTIVE:
        raise ValidationError(f"Only active campaigns can be paused (status: {campaign.status})")
    campaign.status = CampaignStatus.PAUSED
    await db.flush()
    logger.info(f"Campaign {campaign.id} paused")


async def start_next_calls(
    db: AsyncSession,
    campaign_id: UUID,
    http_client: httpx.AsyncClient | None = None,
    now: datetime | None = None,
) -> NextCallsResult:
    """Dial pending recipients up to the campaign's free concurrency slots."""
    result = NextCallsResult()
    campaign = await db.get(CallCampaign, campaign_id)
    if campaign is None or campaign.status != CampaignStatus.ACTIVE:
        return result

    now = now or utcnow()
    if not is_within_business_hours(campaign.business_hours_config, campaign.timezone, now):
        result.outside_business_hours = True
        result.remaining = await count_recipients(db, campaign_id, RecipientStatus.PENDING)
        logger.info(f"Campaign {campaign_id} outside business hours, not dialing")
        return result

    agent = await db.get(AIAgent, campaign.agent_id)
    caller = await resolve_outbound_caller(db, agent) if agent else None
    if caller is None:
        result.errors.append("No outbound caller configured for the campaign agent")
        result.remaining = await count_recipients(db, campaign_id, RecipientStatus.PENDING)
        return result

    calling = await count_recipients(db, campaign_id, RecipientStatus.CALLING)
    slots = max(campaign.concurrency_limit - calling, 0)
    recipients = (
        (
            await db.execute(
                select(CallRecipient)
                .where(CallRecipient.campaign_id == campaign_id)
                .where(CallRecipient.call_status == RecipientStatus.PENDING)
                .order_by(CallRecipient.created_at, CallRecipient.id)
                .limit(slots)
                .with_for_update(skip_locked=True)
            )
        )
        .scalars()
        .all()
    )

    for recipient in recipients:
        recipient.call_status = RecipientStatus.CALLING
        recipient.attempts += 1
        recipient.call_started_at = now

        dispatch = await place_outbound_call(
            agent,
            caller,
            recipient.phone_number,
            customer_name=recipient.full_name,
            metadata={
                "campaign_id": str(campaign.id),
                "recipient_id": str(recipient.id),
                "workspace_id": str(campaign.workspace_id),
            },
            http_client=http_client,
        )

        if dispatch.success:
            recipient.external_call_id = dispatch.external_call_id
            campaign.pending_calls = max(campaign.pending_calls - 1, 0)
            result.started += 1
            continue

        if dispatch.is_concurrency_limit:
            # Put it back; the next call-ended event retries
            recipient.call_status = RecipientStatus.PENDING
            recipient.attempts -= 1
            recipient.call_started_at = None
            result.concurrency_hit = True
            logger.info(f"Provider concurrency limit hit for campaign {campaign_id}")
            break

        recipient.call_status = RecipientStatus.FAILED
        recipient.call_outcome = CallOutcome.ERROR
        recipient.call_ended_at = now
        recipient.last_error = dispatch.error
        campaign.pending_calls = max(campaign.pending_calls - 1, 0)
        campaign.completed_calls += 1
        campaign.failed_calls += 1
        result.failed += 1
        result.errors.append(f"{recipient.phone_number}: {dispatch.error}")

    await db.flush()
    result.remaining = await count_recipients(db, campaign_id, RecipientStatus.PENDING)

    if result.remaining == 0 and (
        await count_recipients(db, campaign_id, RecipientStatus.CALLING)
    ) == 0:
        _complete(campaign, now)
        await db.flush()

    logger.info(
        f"Campaign {campaign_id} batch: started={result.started}, "
        f"failed={result.failed}, remaining={result.remaining}"
    )
    return result


async def handle_campaign_call_ended(
    db: AsyncSession,
    external_call_id: str,
    outcome: CallEndOutcome,
    http_client: httpx.AsyncClient | None = None,
) -> bool:
    """Settle the recipient for a finished call and keep the queue moving.

    Returns:
        False when the call doesn't belong to any campaign.
    """
    recipient = (
        await db.execute(
            select(CallRecipient).where(CallRecipient.external_call_id == external_call_id)
        )
    ).scalar_one_or_none()
    if recipient is None:
        return False

    # Repeated webhooks for an already settled call change nothing
    if recipient.call_status in (RecipientStatus.COMPLETED, RecipientStatus.FAILED):
        return True

    recipient.call_status = (
        RecipientStatus.COMPLETED if outcome.success else RecipientStatus.FAILED
    )
    recipient.call_outcome = outcome.outcome
    recipient.call_ended_at = utcnow()
    recipient.call_duration_seconds = outcome.duration_seconds
    recipient.last_error = outcome.error

    await db.execute(
        update(CallCampaign)
        .where(CallCampaign.id == recipient.campaign_id)
        .values(
            completed_calls=CallCampaign.completed_calls + 1,
            successful_calls=CallCampaign.successful_calls + (1 if outcome.success else 0),
            failed_calls=CallCampaign.failed_calls + (0 if outcome.success else 1),
        )
    )
    await db.flush()

    campaign = await db.get(CallCampaign, recipient.campaign_id)
    if campaign.status not in (CampaignStatus.ACTIVE, CampaignStatus.PAUSED):
        return True

    pending = await count_recipients(db, campaign.id, RecipientStatus.PENDING)
    if pending > 0:
        if campaign.status == CampaignStatus.ACTIVE:
            await start_next_calls(db, campaign.id, http_client=http_client)
        return True

    if await count_recipients(db, campaign.id, RecipientStatus.CALLING) == 0:
        _complete(campaign)
        await db.flush()
    return True


async def cleanup_expired_campaigns(db: AsyncSession, now: datetime | None = None) -> int:
    """Cancel draft campaigns whose scheduled expiry has passed.

    Returns:
        Number of campaigns cancelled.
    """
    now = now or utcnow()
    result = await db.execute(
        update(CallCampaign)
        .where(CallCampaign.status == CampaignStatus.DRAFT)
        .where(CallCampaign.scheduled_expires_at.is_not(None))
        .where(CallCampaign.scheduled_expires_at < now)
        .where(CallCampaign.deleted_at.is_(None))
        .values(status=CampaignStatus.CANCELLED, updated_at=now)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount:
        logger.info(f"Cancelled {result.rowcount} expired draft campaigns")
    return result.rowcount
