"""Stripe event envelope parsing and typed event subjects.

Normalization turns a verified webhook body into a ``NormalizedEvent`` whose
``kind`` is one of a closed set. Everything the router does not reconcile is
``EventKind.IGNORED`` so it can still be acknowledged with a 200.

Subject parsing tolerates the shape changes between Stripe API versions:
ids may arrive expanded into objects, billing periods moved from the
subscription onto its items, and invoices moved their subscription reference
under ``parent.subscription_details``.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from fanledger.payments.errors import MalformedEventError

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Event kinds the router knows how to handle."""

    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAID = "invoice.paid"
    ACCOUNT_UPDATED = "account.updated"
    IGNORED = "ignored"

    @classmethod
    def from_type(cls, event_type: str) -> "EventKind":
        """Map a Stripe event type to a kind; unknown types are IGNORED."""
        try:
            return cls(event_type)
        except ValueError:
            return cls.IGNORED


# Metadata keys written by checkout session creation
FAN_ID_KEY = "fan_id"
CREATOR_ID_KEY = "creator_id"
PLAN_ID_KEY = "plan_id"


@dataclass(frozen=True)
class Correlation:
    """Identifiers tying a Stripe subscription to a ledger row."""

    fan_id: str
    creator_id: str
    plan_id: str | None = None

    @classmethod
    def from_metadata(cls, metadata: dict[str, str]) -> "Correlation | None":
        """Build from metadata; None if fan_id or creator_id is missing."""
        fan_id = metadata.get(FAN_ID_KEY, "")
        creator_id = metadata.get(CREATOR_ID_KEY, "")
        if not fan_id or not creator_id:
            return None
        return cls(
            fan_id=fan_id,
            creator_id=creator_id,
            plan_id=metadata.get(PLAN_ID_KEY) or None,
        )

    def as_metadata(self) -> dict[str, str]:
        """Render as Stripe metadata (omits an unknown plan)."""
        metadata = {FAN_ID_KEY: self.fan_id, CREATOR_ID_KEY: self.creator_id}
        if self.plan_id:
            metadata[PLAN_ID_KEY] = self.plan_id
        return metadata


@dataclass
class NormalizedEvent:
    """Parsed webhook envelope."""

    event_id: str | None
    kind: EventKind
    event_type: str
    subject: dict[str, Any]
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def correlation(self) -> Correlation | None:
        return Correlation.from_metadata(self.metadata)


@dataclass
class SubscriptionSnapshot:
    """Provider-side state of one subscription."""

    subscription_id: str
    customer_id: str | None
    status: str | None
    cancel_at_period_end: bool
    current_period_start: datetime | None
    current_period_end: datetime | None
    canceled_at: datetime | None
    ended_at: datetime | None
    metadata: dict[str, str]

    @classmethod
    def from_payload(cls, obj: dict[str, Any]) -> "SubscriptionSnapshot":
        """Parse a Stripe Subscription object.

        Raises:
            MalformedEventError: If the object has no subscription id
        """
        subscription_id = object_id(obj)
        if not subscription_id:
            raise MalformedEventError("Subscription object has no id")

        period_start, period_end = _billing_period(obj)

        return cls(
            subscription_id=subscription_id,
            customer_id=object_id(obj.get("customer")),
            status=obj.get("status"),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
            current_period_start=period_start,
            current_period_end=period_end,
            canceled_at=to_datetime(obj.get("canceled_at")),
            ended_at=to_datetime(obj.get("ended_at")),
            metadata=extract_metadata(obj),
        )

    @property
    def correlation(self) -> Correlation | None:
        return Correlation.from_metadata(self.metadata)


@dataclass
class AccountSnapshot:
    """Provider-side state of a creator's connected account."""

    account_id: str
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool

    @classmethod
    def from_payload(cls, obj: dict[str, Any]) -> "AccountSnapshot":
        """Parse a Stripe Account object.

        Raises:
            MalformedEventError: If the object has no account id
        """
        account_id = object_id(obj)
        if not account_id:
            raise MalformedEventError("Account object has no id")
        return cls(
            account_id=account_id,
            charges_enabled=bool(obj.get("charges_enabled")),
            payouts_enabled=bool(obj.get("payouts_enabled")),
            details_submitted=bool(obj.get("details_submitted")),
        )

    @property
    def fully_enabled(self) -> bool:
        return self.charges_enabled and self.payouts_enabled


def object_id(value: Any) -> str | None:
    """Return the id of a Stripe reference that may be an id or an expanded object."""
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, dict):
        inner = value.get("id")
        if isinstance(inner, str) and inner.strip():
            return inner.strip()
    return None


def to_datetime(ts: Any) -> datetime | None:
    """Convert a Stripe unix timestamp (seconds) to an aware UTC datetime."""
    if ts is None or isinstance(ts, bool):
        return None
    try:
        seconds = int(ts)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _clean_metadata(raw: Any) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    metadata = {}
    for key, value in raw.items():
        if value is None:
            continue
        text = str(value).strip()
        if text:
            metadata[str(key)] = text
    return metadata


def extract_metadata(obj: dict[str, Any]) -> dict[str, str]:
    """Collect correlation metadata from wherever Stripe placed it.

    The object's own metadata wins; for invoices the subscription snapshot
    (``subscription_details``, or ``parent.subscription_details`` on newer
    API versions) fills in missing keys.
    """
    metadata: dict[str, str] = {}
    parent = obj.get("parent")
    nested_sources = [
        (parent or {}).get("subscription_details") if isinstance(parent, dict) else None,
        obj.get("subscription_details"),
        obj,
    ]
    for source in nested_sources:
        if isinstance(source, dict):
            metadata.update(_clean_metadata(source.get("metadata")))
    return metadata


def _billing_period(obj: dict[str, Any]) -> tuple[datetime | None, datetime | None]:
    """Current billing period of a subscription.

    Older API versions carry it on the subscription; newer ones only on each
    subscription item, in which case the widest span across items is used.
    """
    start = to_datetime(obj.get("current_period_start"))
    end = to_datetime(obj.get("current_period_end"))
    if start is not None and end is not None:
        return start, end

    items = (obj.get("items") or {}).get("data") or []
    item_starts = [to_datetime(item.get("current_period_start")) for item in items]
    item_ends = [to_datetime(item.get("current_period_end")) for item in items]
    item_starts = [ts for ts in item_starts if ts is not None]
    item_ends = [ts for ts in item_ends if ts is not None]

    if start is None and item_starts:
        start = min(item_starts)
    if end is None and item_ends:
        end = max(item_ends)
    return start, end


def invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    """Subscription referenced by an invoice, if any."""
    sub_id = object_id(invoice.get("subscription"))
    if sub_id:
        return sub_id
    parent = invoice.get("parent")
    if isinstance(parent, dict):
        details = parent.get("subscription_details") or {}
        return object_id(details.get("subscription"))
    return None


def normalize_event(payload: bytes | str) -> NormalizedEvent:
    """Parse a verified webhook body into a NormalizedEvent.

    Args:
        payload: Raw webhook body (already signature-checked)

    Returns:
        NormalizedEvent; unknown event types get ``EventKind.IGNORED``

    Raises:
        MalformedEventError: If the body is not a JSON event envelope
    """
    try:
        envelope = json.loads(payload)
    except (ValueError, TypeError) as e:
        raise MalformedEventError(f"Body is not valid JSON: {e}") from e

    if not isinstance(envelope, dict):
        raise MalformedEventError("Event envelope must be a JSON object")

    event_type = envelope.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedEventError("Event envelope has no type")

    data = envelope.get("data")
    subject = data.get("object") if isinstance(data, dict) else None
    if not isinstance(subject, dict):
        raise MalformedEventError(f"Event {event_type} has no data.object")

    kind = EventKind.from_type(event_type)
    if kind is EventKind.IGNORED:
        logger.debug(f"Event type {event_type} normalized to ignored")

    return NormalizedEvent(
        event_id=envelope.get("id"),
        kind=kind,
        event_type=event_type,
        subject=subject,
        metadata=extract_metadata(subject),
    )
