"""Persistence layer for the feature usage ledger."""
from __future__ import annotations

from decimal import Decimal
from typing import Optional, Sequence, Tuple

from ..persistence import PostgresRepository
from .exceptions import UsageConflictError
from .models import FeatureUsage


def _row_to_usage(row: dict) -> FeatureUsage:
    return FeatureUsage(
        id=int(row["id"]),
        subscription_id=int(row["subscription_id"]),
        feature_id=int(row["feature_id"]),
        used=Decimal(row["used"] if row.get("used") is not None else 0),
        ends_at=row.get("ends_at"),
        active=bool(row["active"]),
        version=int(row["version"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        deleted_at=row.get("deleted_at"),
    )


class PostgresUsageRepository(PostgresRepository):
    """Concrete repository persisting usage ledger rows in PostgreSQL.

    Relies on the partial unique index over ``(subscription_id, feature_id)``
    for live rows so concurrent first uses converge on a single entry.
    """

    def get_usage(self, subscription_id: int, feature_id: int) -> Optional[FeatureUsage]:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT *
                FROM {self.tables.feature_subscription}
                WHERE subscription_id = %s AND feature_id = %s AND deleted_at IS NULL
                LIMIT 1
                """,
                (subscription_id, feature_id),
            )
            row = cursor.fetchone()
        return _row_to_usage(row) if row else None

    def first_or_create_usage(self, usage: FeatureUsage) -> Tuple[FeatureUsage, bool]:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                INSERT INTO {self.tables.feature_subscription} (
                    subscription_id,
                    feature_id,
                    used,
                    ends_at,
                    active
                )
                VALUES (%(subscription_id)s, %(feature_id)s, %(used)s, %(ends_at)s, %(active)s)
                ON CONFLICT (subscription_id, feature_id) WHERE deleted_at IS NULL DO NOTHING
                RETURNING *
                """,
                {
                    "subscription_id": usage.subscription_id,
                    "feature_id": usage.feature_id,
                    "used": usage.used,
                    "ends_at": usage.ends_at,
                    "active": usage.active,
                },
            )
            row = cursor.fetchone()
            if row:
                return _row_to_usage(row), True

            cursor.execute(
                f"""
                SELECT *
                FROM {self.tables.feature_subscription}
                WHERE subscription_id = %s AND feature_id = %s AND deleted_at IS NULL
                LIMIT 1
                """,
                (usage.subscription_id, usage.feature_id),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to load usage after insert conflict")
            return _row_to_usage(row), False

    def save_usage(self, usage: FeatureUsage) -> FeatureUsage:
        if usage.id is None:
            raise ValueError("Usage must be created before it can be saved")
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                UPDATE {self.tables.feature_subscription}
                SET used = %(used)s,
                    ends_at = %(ends_at)s,
                    active = %(active)s,
                    version = version + 1,
                    updated_at = NOW()
                WHERE id = %(id)s AND version = %(version)s AND deleted_at IS NULL
                RETURNING *
                """,
                {
                    "id": usage.id,
                    "used": usage.used,
                    "ends_at": usage.ends_at,
                    "active": usage.active,
                    "version": usage.version,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise UsageConflictError(usage.subscription_id, usage.feature_id, usage.version)
            return _row_to_usage(row)

    def list_usage(self, subscription_id: int) -> Sequence[FeatureUsage]:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT *
                FROM {self.tables.feature_subscription}
                WHERE subscription_id = %s AND deleted_at IS NULL
                ORDER BY id
                """,
                (subscription_id,),
            )
            rows = cursor.fetchall()
        return [_row_to_usage(row) for row in rows]


__all__ = ["PostgresUsageRepository"]
