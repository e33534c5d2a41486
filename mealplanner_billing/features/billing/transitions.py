"""
mealplanner_billing/features/billing/transitions.py

Subscription state machine.

apply_event() is a pure function of (current state, event, price map). It
never touches storage; the reconciler owns loading, versioning and writing.

Subscription events carry the provider's full subscription object, and a
completed checkout carries the purchased tier, so both can create the row
when it is missing. Invoice and dispute events only adjust status and must
wait (defer) until a subscription exists.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from mealplanner_billing.models.payment_event import EventOutcome, EventType, PaymentEvent
from mealplanner_billing.models.subscription import Subscription, SubscriptionStatus, Tier


class TransitionKind(str, Enum):
    WRITE = "write"
    NO_OP = "no_op"
    DEFER = "defer"
    REJECT = "reject"


@dataclass(frozen=True)
class Transition:
    kind: TransitionKind
    subscription: Optional[Subscription] = None  # new state when kind == WRITE
    create: bool = False
    reason: Optional[str] = None


# Provider statuses outside our enum
_PROVIDER_STATUS_MAP = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.UNPAID,
    "canceled": SubscriptionStatus.CANCELED,
    "cancelled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.UNPAID,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "paused": SubscriptionStatus.UNPAID,
}

_FULL_STATE_EVENTS = frozenset({
    EventType.SUBSCRIPTION_CREATED,
    EventType.SUBSCRIPTION_UPDATED,
    EventType.SUBSCRIPTION_DELETED,
})


class _Rejected(Exception):
    pass


def stale_outcome(current: Optional[Subscription], event: PaymentEvent) -> Optional[EventOutcome]:
    """
    STALE if the event predates the last applied one, ALREADY_APPLIED if it
    is the last applied one, otherwise None (event should be evaluated).
    """
    if current is None:
        return None
    if current.last_applied_event_id and current.last_applied_event_id == event.event_id:
        return EventOutcome.ALREADY_APPLIED
    if current.last_applied_event_at is not None and event.occurred_at < current.last_applied_event_at:
        return EventOutcome.STALE
    return None


def map_provider_status(raw: Optional[str]) -> Optional[SubscriptionStatus]:
    if raw is None:
        return None
    status = _PROVIDER_STATUS_MAP.get(str(raw).lower())
    if status is None:
        raise _Rejected(f"unknown subscription status: {raw}")
    return status


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


def _first_item(obj: Dict[str, Any]) -> Dict[str, Any]:
    items = obj.get("items")
    data = items.get("data") if isinstance(items, dict) else None
    if isinstance(data, list) and data and isinstance(data[0], dict):
        return data[0]
    return {}


def _price_id(obj: Dict[str, Any]) -> Optional[str]:
    item = _first_item(obj)
    price = item.get("price") or item.get("plan") or obj.get("plan")
    if isinstance(price, dict):
        return price.get("id")
    if isinstance(price, str):
        return price
    return None


def resolve_tier(obj: Dict[str, Any], price_tiers: Mapping[str, str]) -> Optional[Tier]:
    """Tier from metadata.tier, else from the configured price mapping."""
    metadata = obj.get("metadata")
    raw = metadata.get("tier") if isinstance(metadata, dict) else None
    if raw:
        try:
            return Tier(str(raw).lower())
        except ValueError:
            raise _Rejected(f"unknown tier: {raw}")
    price_id = _price_id(obj)
    if price_id and price_id in price_tiers:
        return Tier(price_tiers[price_id])
    return None


def _subscription_period(obj: Dict[str, Any]):
    start = _timestamp(obj.get("current_period_start"))
    end = _timestamp(obj.get("current_period_end"))
    if start is None or end is None:
        # Newer API versions report the period per subscription item
        item = _first_item(obj)
        start = start or _timestamp(item.get("current_period_start"))
        end = end or _timestamp(item.get("current_period_end"))
    return start, end


def _invoice_period(obj: Dict[str, Any]):
    lines = obj.get("lines")
    data = lines.get("data") if isinstance(lines, dict) else None
    if isinstance(data, list) and data and isinstance(data[0], dict):
        period = data[0].get("period")
        if isinstance(period, dict):
            return _timestamp(period.get("start")), _timestamp(period.get("end"))
    return None, None


def _stamp(subscription: Subscription, event: PaymentEvent) -> Subscription:
    return subscription.model_copy(update={
        "last_applied_event_at": event.occurred_at,
        "last_applied_event_id": event.event_id,
    })


def _full_state(current: Optional[Subscription], event: PaymentEvent, price_tiers: Mapping[str, str]) -> Transition:
    obj = event.data_object
    tier = resolve_tier(obj, price_tiers) or (current.tier if current else None)
    if tier is None:
        if event.event_type == EventType.SUBSCRIPTION_CREATED:
            raise _Rejected("subscription.created without a resolvable tier")
        # The creating event will bring the tier; try again after it lands
        return Transition(TransitionKind.DEFER, reason="no subscription and no tier in event")

    if event.event_type == EventType.SUBSCRIPTION_DELETED:
        status = SubscriptionStatus.CANCELED
    else:
        status = map_provider_status(obj.get("status"))
        if status is None:
            status = current.status if current else SubscriptionStatus.ACTIVE

    period_start, period_end = _subscription_period(obj)
    if current is not None:
        period_start = period_start or current.current_period_start
        period_end = period_end or current.current_period_end

    raw_cancel = obj.get("cancel_at_period_end")
    if event.event_type == EventType.SUBSCRIPTION_DELETED and current is not None:
        cancel_at_period_end = current.cancel_at_period_end
    elif isinstance(raw_cancel, bool):
        cancel_at_period_end = raw_cancel
    else:
        cancel_at_period_end = current.cancel_at_period_end if current else False

    provider_subscription_id = obj.get("id") if isinstance(obj.get("id"), str) else None
    if current is not None:
        provider_subscription_id = provider_subscription_id or current.provider_subscription_id

    new_state = Subscription(
        customer_id=event.customer_id,
        provider_subscription_id=provider_subscription_id,
        tier=tier,
        status=status,
        current_period_start=period_start,
        current_period_end=period_end,
        cancel_at_period_end=cancel_at_period_end,
        version=current.version if current else 0,
        created_at=current.created_at if current else None,
    )
    return Transition(TransitionKind.WRITE, subscription=_stamp(new_state, event), create=current is None)


def _status_change(current: Optional[Subscription], event: PaymentEvent, status: SubscriptionStatus) -> Transition:
    if current is None:
        return Transition(TransitionKind.DEFER, reason="no subscription yet")
    if current.status == SubscriptionStatus.CANCELED:
        return Transition(TransitionKind.NO_OP, reason="subscription canceled")
    changes = {"status": status}
    if event.event_type == EventType.INVOICE_PAID:
        start, end = _invoice_period(event.data_object)
        if start is not None and end is not None:
            changes["current_period_start"] = start
            changes["current_period_end"] = end
    return Transition(TransitionKind.WRITE, subscription=_stamp(current.model_copy(update=changes), event))


def _provider_ref(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        value = value.get("id")
    return value if isinstance(value, str) and value else None


def _checkout(current: Optional[Subscription], event: PaymentEvent, price_tiers: Mapping[str, str]) -> Transition:
    """
    Completed checkout: the purchase itself.

    Carries the tier and our customer id in session metadata but no billing
    period; subscription and invoice events fill that in.
    """
    obj = event.data_object
    tier = resolve_tier(obj, price_tiers)
    if tier is None:
        raise _Rejected("checkout completed without a tier in metadata")
    provider_subscription_id = _provider_ref(obj.get("subscription"))

    if current is None:
        new_state = Subscription(
            customer_id=event.customer_id,
            provider_subscription_id=provider_subscription_id,
            tier=tier,
            status=SubscriptionStatus.ACTIVE,
        )
        return Transition(TransitionKind.WRITE, subscription=_stamp(new_state, event), create=True)

    changes = {
        "tier": tier,
        "provider_subscription_id": provider_subscription_id or current.provider_subscription_id,
    }
    if current.status == SubscriptionStatus.CANCELED:
        # Buying again after cancellation starts a new subscription
        changes["status"] = SubscriptionStatus.ACTIVE
        changes["cancel_at_period_end"] = False
    return Transition(TransitionKind.WRITE, subscription=_stamp(current.model_copy(update=changes), event))


def apply_event(
    current: Optional[Subscription],
    event: PaymentEvent,
    price_tiers: Optional[Mapping[str, str]] = None,
) -> Transition:
    """
    Compute the effect of one event on the current subscription state.

    Args:
        current: Stored subscription, or None if the customer has none yet
        event: Pending event (already checked for staleness)
        price_tiers: Provider price id -> tier name

    Returns:
        Transition describing what the reconciler should do
    """
    price_tiers = price_tiers or {}
    try:
        if event.event_type in _FULL_STATE_EVENTS:
            return _full_state(current, event, price_tiers)
        if event.event_type == EventType.CHECKOUT_COMPLETED:
            return _checkout(current, event, price_tiers)
        if event.event_type == EventType.INVOICE_PAID:
            return _status_change(current, event, SubscriptionStatus.ACTIVE)
        if event.event_type in (EventType.INVOICE_PAYMENT_FAILED, EventType.DISPUTE_CREATED):
            return _status_change(current, event, SubscriptionStatus.PAST_DUE)
        if event.event_type == EventType.SUBSCRIPTION_TRIAL_WILL_END:
            return Transition(TransitionKind.NO_OP, reason="informational event")
        return Transition(TransitionKind.REJECT, reason=f"unsupported event type: {event.event_type.value}")
    except _Rejected as e:
        return Transition(TransitionKind.REJECT, reason=str(e))
