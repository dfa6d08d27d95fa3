"""Stripe Connect client.

All workspace billing objects (customers, meters, payment intents) live on
the partner's connected account, so every call takes ``stripe_account``.
"""

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import stripe

from control_plane.config import ConfigurationError

logger = logging.getLogger("control-plane.stripe")

DEFAULT_METER_EVENT_NAME = "voice_call_minutes"
DEFAULT_METER_DISPLAY_NAME = "Voice Call Minutes"


@dataclass
class StripeConfig:
    """Stripe configuration from environment."""

    api_key: str
    connect_webhook_secret: str

    @classmethod
    def from_env(cls) -> "StripeConfig":
        return cls(
            api_key=os.getenv("STRIPE_SECRET_KEY", ""),
            connect_webhook_secret=os.getenv("STRIPE_CONNECT_WEBHOOK_SECRET", ""),
        )

    def is_configured(self) -> bool:
        return bool(self.api_key)


@dataclass
class MeterInfo:
    id: str
    event_name: str
    display_name: str


def get_connect_account_id(partner_settings: dict[str, Any] | None) -> str | None:
    """Read the partner's connected account ID from its settings JSON."""
    value = (partner_settings or {}).get("stripe_connect_account_id")
    return value if isinstance(value, str) and value else None


class StripeConnectClient:
    """Thin wrapper over the Stripe SDK scoped to connected accounts."""

    def __init__(self, config: StripeConfig | None = None):
        self.config = config or StripeConfig.from_env()
        if self.config.is_configured():
            stripe.api_key = self.config.api_key

    def _require_key(self) -> None:
        if not self.config.is_configured():
            raise ConfigurationError("STRIPE_SECRET_KEY is not set")

    # -------------------------------------------------------------------------
    # Meters
    # -------------------------------------------------------------------------

    def ensure_meter(
        self,
        connect_account_id: str,
        event_name: str = DEFAULT_METER_EVENT_NAME,
        display_name: str = DEFAULT_METER_DISPLAY_NAME,
    ) -> MeterInfo:
        """Reuse the active meter with ``event_name`` or create one."""
        self._require_key()
        meters = stripe.billing.Meter.list(limit=100, stripe_account=connect_account_id)
        for meter in meters.data:
            if meter.event_name == event_name and meter.status == "active":
                logger.info(
                    f"Meter already exists on Connect account {connect_account_id}: {meter.id}"
                )
                return MeterInfo(meter.id, meter.event_name, meter.display_name)

        meter = stripe.billing.Meter.create(
            event_name=event_name,
            display_name=display_name,
            default_aggregation={"formula": "sum"},
            customer_mapping={
                "type": "by_id",
                "event_payload_key": "stripe_customer_id",
            },
            value_settings={"event_payload_key": "value"},
            stripe_account=connect_account_id,
        )
        logger.info(f"Created meter {meter.id} on Connect account {connect_account_id}")
        return MeterInfo(meter.id, meter.event_name, meter.display_name)

    def create_meter_event(
        self,
        connect_account_id: str,
        customer_id: str,
        minutes: int,
        timestamp: datetime,
        identifier: str,
        event_name: str = DEFAULT_METER_EVENT_NAME,
    ) -> str:
        """Report usage; ``identifier`` makes the event idempotent in Stripe.

        Returns:
            The event identifier Stripe recorded.
        """
        self._require_key()
        event = stripe.billing.MeterEvent.create(
            event_name=event_name,
            payload={"value": str(minutes), "stripe_customer_id": customer_id},
            timestamp=int(timestamp.timestamp()),
            identifier=identifier,
            stripe_account=connect_account_id,
        )
        return event.identifier

    # -------------------------------------------------------------------------
    # Customers
    # -------------------------------------------------------------------------

    def create_customer(
        self, connect_account_id: str, name: str, metadata: dict[str, str]
    ) -> str:
        self._require_key()
        customer = stripe.Customer.create(
            name=name,
            metadata=metadata,
            stripe_account=connect_account_id,
        )
        return customer.id

    def credit_customer_balance(
        self,
        connect_account_id: str,
        customer_id: str,
        amount_cents: int,
        description: str,
        metadata: dict[str, str] | None = None,
    ) -> int:
        """Add a credit (negative balance) and return the new credit in cents."""
        self._require_key()
        stripe.Customer.create_balance_transaction(
            customer_id,
            amount=-amount_cents,
            currency="usd",
            description=description,
            metadata=metadata or {},
            stripe_account=connect_account_id,
        )
        return self.get_customer_balance(connect_account_id, customer_id)

    def get_customer_balance(self, connect_account_id: str, customer_id: str) -> int:
        """Customer credit in cents, as a positive number."""
        self._require_key()
        customer = stripe.Customer.retrieve(customer_id, stripe_account=connect_account_id)
        return abs(customer.balance or 0)

    # -------------------------------------------------------------------------
    # Payments
    # -------------------------------------------------------------------------

    def create_topup_payment_intent(
        self,
        connect_account_id: str,
        customer_id: str | None,
        amount_cents: int,
        workspace_id: str,
    ) -> dict[str, Any]:
        """PaymentIntent whose success webhook credits the workspace."""
        self._require_key()
        params: dict[str, Any] = {
            "amount": amount_cents,
            "currency": "usd",
            "automatic_payment_methods": {"enabled": True},
            "metadata": {
                "type": "workspace_credits_topup",
                "workspace_id": workspace_id,
                "amount_cents": str(amount_cents),
            },
            "stripe_account": connect_account_id,
        }
        if customer_id:
            params["customer"] = customer_id
        intent = stripe.PaymentIntent.create(**params)
        return {"payment_intent_id": intent.id, "client_secret": intent.client_secret}

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    def verify_webhook(self, payload: bytes, signature: str) -> dict[str, Any]:
        """Verify and parse a Connect webhook.

        Raises:
            ConfigurationError: If the webhook secret is not set.
            ValueError: If signature verification fails.
        """
        if not self.config.connect_webhook_secret:
            raise ConfigurationError("STRIPE_CONNECT_WEBHOOK_SECRET is not set")
        try:
            stripe.Webhook.construct_event(
                payload, signature, self.config.connect_webhook_secret
            )
        except stripe.SignatureVerificationError as e:
            raise ValueError(f"Invalid webhook signature: {e}") from e
        # Plain dicts are easier to walk than StripeObjects
        return json.loads(payload)


# Singleton instance
_stripe_client: StripeConnectClient | None = None


def get_stripe_client() -> StripeConnectClient:
    """Get the Stripe client singleton."""
    global _stripe_client
    if _stripe_client is None:
        _stripe_client = StripeConnectClient()
    return _stripe_client
