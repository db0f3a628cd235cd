"""Persistence layer for subscriptions."""
from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

from ..catalog.models import Plan
from ..persistence import PostgresRepository
from .models import SubscriberRef, Subscription
from .query import SubscriptionQuery


def _row_to_subscription(row: dict) -> Subscription:
    return Subscription(
        id=int(row["id"]),
        slug=row["slug"],
        name=row["name"],
        plan_id=int(row["plan_id"]),
        subscriber=SubscriberRef(kind=row["subscriber_type"], id=row["subscriber_id"]),
        starts_at=row.get("starts_at"),
        ends_at=row.get("ends_at"),
        trial_ends_at=row.get("trial_ends_at"),
        grace_ends_at=row.get("grace_ends_at"),
        cancels_at=row.get("cancels_at"),
        plan_changed_at=row.get("plan_changed_at"),
        timezone=row.get("timezone"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        deleted_at=row.get("deleted_at"),
    )


def _subscription_params(subscription: Subscription) -> dict:
    return {
        "id": subscription.id,
        "slug": subscription.slug,
        "name": subscription.name,
        "plan_id": subscription.plan_id,
        "subscriber_type": subscription.subscriber.kind,
        "subscriber_id": subscription.subscriber.id,
        "starts_at": subscription.starts_at,
        "ends_at": subscription.ends_at,
        "trial_ends_at": subscription.trial_ends_at,
        "grace_ends_at": subscription.grace_ends_at,
        "cancels_at": subscription.cancels_at,
        "plan_changed_at": subscription.plan_changed_at,
        "timezone": subscription.timezone,
        "created_at": subscription.created_at,
    }


def _build_filters(query: SubscriptionQuery) -> Tuple[List[str], dict]:
    clauses = ["deleted_at IS NULL"]
    params: dict = {"now": query.now}
    now_expr = "COALESCE(%(now)s::timestamptz, NOW())"

    if query.subscriber is not None:
        clauses.append("subscriber_type = %(subscriber_type)s AND subscriber_id = %(subscriber_id)s")
        params["subscriber_type"] = query.subscriber.kind
        params["subscriber_id"] = query.subscriber.id
    if query.plan_ids:
        clauses.append("plan_id = ANY(%(plan_ids)s::bigint[])")
        params["plan_ids"] = list(query.plan_ids)
    if not query.include_cancelled:
        clauses.append("cancels_at IS NULL")
    if not query.include_ended:
        clauses.append(f"(ends_at IS NULL OR ends_at > {now_expr})")
    if not query.include_not_started:
        clauses.append(f"starts_at <= {now_expr}")
    if query.only_not_active:
        clauses.append(
            f"((ends_at IS NOT NULL AND ends_at <= {now_expr})"
            f" OR starts_at IS NULL OR starts_at > {now_expr}"
            " OR cancels_at IS NOT NULL)"
        )
    for column, after, before in (
        ("ends_at", query.ends_after, query.ends_before),
        ("trial_ends_at", query.trial_ends_after, query.trial_ends_before),
        ("grace_ends_at", query.grace_ends_after, query.grace_ends_before),
    ):
        if after is not None:
            clauses.append(f"{column} >= %({column}_after)s")
            params[f"{column}_after"] = after
        if before is not None:
            clauses.append(f"{column} <= %({column}_before)s")
            params[f"{column}_before"] = before
    return clauses, params


class PostgresSubscriptionRepository(PostgresRepository):
    """Concrete repository persisting subscriptions in PostgreSQL."""

    def save_subscription(self, subscription: Subscription) -> Subscription:
        params = _subscription_params(subscription)
        with self._cursor() as cursor:
            if subscription.id is None:
                cursor.execute(
                    f"""
                    INSERT INTO {self.tables.subscriptions} (
                        slug,
                        name,
                        plan_id,
                        subscriber_type,
                        subscriber_id,
                        starts_at,
                        ends_at,
                        trial_ends_at,
                        grace_ends_at,
                        cancels_at,
                        plan_changed_at,
                        timezone,
                        created_at,
                        updated_at
                    )
                    VALUES (%(slug)s, %(name)s, %(plan_id)s, %(subscriber_type)s, %(subscriber_id)s,
                            %(starts_at)s, %(ends_at)s, %(trial_ends_at)s, %(grace_ends_at)s,
                            %(cancels_at)s, %(plan_changed_at)s, %(timezone)s, %(created_at)s, %(created_at)s)
                    RETURNING *
                    """,
                    params,
                )
            else:
                cursor.execute(
                    f"""
                    UPDATE {self.tables.subscriptions}
                    SET name = %(name)s,
                        plan_id = %(plan_id)s,
                        starts_at = %(starts_at)s,
                        ends_at = %(ends_at)s,
                        trial_ends_at = %(trial_ends_at)s,
                        grace_ends_at = %(grace_ends_at)s,
                        cancels_at = %(cancels_at)s,
                        plan_changed_at = %(plan_changed_at)s,
                        timezone = %(timezone)s,
                        updated_at = NOW()
                    WHERE id = %(id)s AND deleted_at IS NULL
                    RETURNING *
                    """,
                    params,
                )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist subscription")
            return _row_to_subscription(row)

    def get_subscription(self, subscription_id: int) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                f"SELECT * FROM {self.tables.subscriptions} WHERE id = %s AND deleted_at IS NULL LIMIT 1",
                (subscription_id,),
            )
            row = cursor.fetchone()
        return _row_to_subscription(row) if row else None

    def get_subscription_by_slug(self, subscriber: SubscriberRef, slug: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT *
                FROM {self.tables.subscriptions}
                WHERE subscriber_type = %s
                  AND subscriber_id = %s
                  AND slug = %s
                  AND deleted_at IS NULL
                LIMIT 1
                """,
                (subscriber.kind, subscriber.id, slug),
            )
            row = cursor.fetchone()
        return _row_to_subscription(row) if row else None

    def list_subscriptions(self, query: SubscriptionQuery) -> Sequence[Subscription]:
        clauses, params = _build_filters(query)
        direction = "DESC" if query.newest_first else "ASC"
        sql = (
            f"SELECT * FROM {self.tables.subscriptions} WHERE "
            + " AND ".join(clauses)
            + f" ORDER BY starts_at {direction} NULLS LAST, id {direction}"
        )
        if query.limit is not None:
            sql += " LIMIT %(limit)s"
            params["limit"] = query.limit
        with self._cursor() as cursor:
            cursor.execute(sql, params)
            rows = cursor.fetchall()
        return [_row_to_subscription(row) for row in rows]

    def apply_plan_change(self, subscription: Subscription, new_plan: Plan, *, sync: bool) -> Subscription:
        """Lock the subscription row, then write dates, ledger sync and plan in one transaction."""

        if subscription.id is None:
            raise ValueError("Subscription must be persisted before changing its plan")
        feature_ids = list(new_plan.feature_ids())
        with self._cursor() as cursor:
            cursor.execute(
                f"SELECT id FROM {self.tables.subscriptions} WHERE id = %s AND deleted_at IS NULL FOR UPDATE",
                (subscription.id,),
            )
            if cursor.fetchone() is None:
                raise LookupError(f"Subscription {subscription.id} not found")

            cursor.execute(
                f"""
                UPDATE {self.tables.subscriptions}
                SET starts_at = %s, ends_at = %s, plan_changed_at = %s, updated_at = NOW()
                WHERE id = %s
                """,
                (subscription.starts_at, subscription.ends_at, subscription.plan_changed_at, subscription.id),
            )

            if sync:
                cursor.execute(
                    f"""
                    UPDATE {self.tables.feature_subscription}
                    SET ends_at = %s, version = version + 1, updated_at = NOW()
                    WHERE subscription_id = %s
                      AND deleted_at IS NULL
                      AND feature_id = ANY(%s::bigint[])
                    """,
                    (subscription.ends_at, subscription.id, feature_ids),
                )
                cursor.execute(
                    f"""
                    UPDATE {self.tables.feature_subscription}
                    SET deleted_at = NOW(), version = version + 1, updated_at = NOW()
                    WHERE subscription_id = %s
                      AND deleted_at IS NULL
                      AND NOT (feature_id = ANY(%s::bigint[]))
                    """,
                    (subscription.id, feature_ids),
                )
            else:
                cursor.execute(
                    f"""
                    UPDATE {self.tables.feature_subscription}
                    SET deleted_at = NOW(), version = version + 1, updated_at = NOW()
                    WHERE subscription_id = %s AND deleted_at IS NULL
                    """,
                    (subscription.id,),
                )

            cursor.execute(
                f"""
                UPDATE {self.tables.subscriptions}
                SET plan_id = %s, updated_at = NOW()
                WHERE id = %s
                RETURNING *
                """,
                (new_plan.id, subscription.id),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to reassign subscription plan")
            return _row_to_subscription(row)

    def apply_renewal(self, subscription: Subscription) -> Subscription:
        if subscription.id is None:
            raise ValueError("Subscription must be persisted before renewing it")
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                UPDATE {self.tables.subscriptions}
                SET starts_at = %s, ends_at = %s, grace_ends_at = %s, cancels_at = %s, updated_at = NOW()
                WHERE id = %s AND deleted_at IS NULL
                RETURNING *
                """,
                (
                    subscription.starts_at,
                    subscription.ends_at,
                    subscription.grace_ends_at,
                    subscription.cancels_at,
                    subscription.id,
                ),
            )
            row = cursor.fetchone()
            if not row:
                raise LookupError(f"Subscription {subscription.id} not found")

            # features with their own reset interval keep their windows
            cursor.execute(
                f"""
                UPDATE {self.tables.feature_subscription}
                SET used = 0, ends_at = %s, version = version + 1, updated_at = NOW()
                WHERE subscription_id = %s
                  AND deleted_at IS NULL
                  AND feature_id IN (
                      SELECT id FROM {self.tables.features}
                      WHERE reset_interval_type IS NULL OR reset_interval_count = 0
                  )
                """,
                (subscription.ends_at, subscription.id),
            )
            return _row_to_subscription(row)


__all__ = ["PostgresSubscriptionRepository"]
