"""
mealplanner_billing/features/subscriptions/repository_sql.py

SQL-backed subscription repository.

compare_and_set is a single conditional UPDATE guarded by the version column,
so two writers that read the same version cannot both succeed.
"""

from datetime import datetime, timezone
from typing import List, Optional
from sqlalchemy import select, insert, update, and_
from sqlalchemy.exc import IntegrityError

from mealplanner_billing.core.database import get_db_session, subscriptions, store_errors, as_utc
from mealplanner_billing.core.errors import VersionConflictError
from mealplanner_billing.models.subscription import Subscription, SubscriptionStatus, Tier


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _row_to_subscription(row) -> Subscription:
    return Subscription(
        customer_id=row.customer_id,
        provider_subscription_id=row.provider_subscription_id,
        tier=Tier(row.tier),
        status=SubscriptionStatus(row.status),
        current_period_start=as_utc(row.current_period_start),
        current_period_end=as_utc(row.current_period_end),
        cancel_at_period_end=bool(row.cancel_at_period_end),
        last_applied_event_at=as_utc(row.last_applied_event_at),
        last_applied_event_id=row.last_applied_event_id,
        version=row.version,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def _state_values(subscription: Subscription) -> dict:
    return {
        "provider_subscription_id": subscription.provider_subscription_id,
        "tier": subscription.tier.value,
        "status": subscription.status.value,
        "current_period_start": as_utc(subscription.current_period_start),
        "current_period_end": as_utc(subscription.current_period_end),
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "last_applied_event_at": as_utc(subscription.last_applied_event_at),
        "last_applied_event_id": subscription.last_applied_event_id,
    }


class SqlSubscriptionRepository:

    def get(self, customer_id: str) -> Optional[Subscription]:
        with store_errors("subscription get"), get_db_session() as session:
            row = session.execute(
                select(subscriptions).where(subscriptions.c.customer_id == customer_id)
            ).first()
            return _row_to_subscription(row) if row else None

    def create(self, subscription: Subscription) -> Subscription:
        now = _now()
        try:
            with store_errors("subscription create"), get_db_session() as session:
                session.execute(
                    insert(subscriptions).values(
                        customer_id=subscription.customer_id,
                        version=1,
                        created_at=now,
                        updated_at=now,
                        **_state_values(subscription),
                    )
                )
        except IntegrityError as e:
            raise VersionConflictError(subscription.customer_id, expected_version=None) from e
        return subscription.model_copy(update={"version": 1, "created_at": now, "updated_at": now})

    def compare_and_set(self, subscription: Subscription, expected_version: int) -> Subscription:
        now = _now()
        with store_errors("subscription compare_and_set"), get_db_session() as session:
            result = session.execute(
                update(subscriptions)
                .where(and_(
                    subscriptions.c.customer_id == subscription.customer_id,
                    subscriptions.c.version == expected_version,
                ))
                .values(
                    version=expected_version + 1,
                    updated_at=now,
                    **_state_values(subscription),
                )
            )
            if result.rowcount != 1:
                raise VersionConflictError(subscription.customer_id, expected_version=expected_version)
        return subscription.model_copy(update={"version": expected_version + 1, "updated_at": now})

    def list_all(self, status: Optional[SubscriptionStatus] = None, limit: int = 100) -> List[Subscription]:
        query = select(subscriptions)
        if status is not None:
            query = query.where(subscriptions.c.status == status.value)
        query = query.order_by(subscriptions.c.customer_id).limit(limit)
        with store_errors("subscription list_all"), get_db_session() as session:
            return [_row_to_subscription(r) for r in session.execute(query).all()]

    def clear(self) -> None:
        """FOR TESTING ONLY."""
        with get_db_session() as session:
            session.execute(subscriptions.delete())
