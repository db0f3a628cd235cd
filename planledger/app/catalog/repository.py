"""Persistence layer for catalog features and plans."""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from psycopg2.extensions import cursor as PgCursor

from ..periods import Interval
from ..persistence import PostgresRepository
from .models import Feature, Plan, PlanFeature


def _interval_columns(interval: Optional[Interval]) -> tuple:
    if interval is None:
        return None, 0
    return interval.interval_type.value, interval.count


def _row_to_feature(row: dict) -> Feature:
    return Feature(
        id=int(row["id"]),
        slug=row["slug"],
        name=row["name"],
        consumable=bool(row["consumable"]),
        active=bool(row["active"]),
        reset_interval=Interval.optional(row.get("reset_interval_type"), row.get("reset_interval_count")),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        deleted_at=row.get("deleted_at"),
    )


def _row_to_plan(row: dict, features: Sequence[PlanFeature] = ()) -> Plan:
    return Plan(
        id=int(row["id"]),
        slug=row["slug"],
        name=row["name"],
        active=bool(row["active"]),
        price=int(row["price"]),
        currency=row["currency"],
        recurrence=Interval(row["interval_type"], int(row["interval_count"])),
        trial_period=Interval.optional(row.get("trial_interval_type"), row.get("trial_interval_count")),
        grace_period=Interval.optional(row.get("grace_interval_type"), row.get("grace_interval_count")),
        features=tuple(features),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        deleted_at=row.get("deleted_at"),
    )


class PostgresCatalogRepository(PostgresRepository):
    """Concrete repository persisting features, plans and their grants in PostgreSQL."""

    def save_feature(self, feature: Feature) -> Feature:
        """Insert or update a feature keyed by slug."""

        interval_type, interval_count = _interval_columns(feature.reset_interval)
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                INSERT INTO {self.tables.features} (
                    slug,
                    name,
                    consumable,
                    active,
                    reset_interval_type,
                    reset_interval_count
                )
                VALUES (%(slug)s, %(name)s, %(consumable)s, %(active)s,
                        %(reset_interval_type)s, %(reset_interval_count)s)
                ON CONFLICT (slug) DO UPDATE SET
                    name = EXCLUDED.name,
                    consumable = EXCLUDED.consumable,
                    active = EXCLUDED.active,
                    reset_interval_type = EXCLUDED.reset_interval_type,
                    reset_interval_count = EXCLUDED.reset_interval_count,
                    deleted_at = NULL,
                    updated_at = NOW()
                RETURNING *
                """,
                {
                    "slug": feature.slug,
                    "name": feature.name,
                    "consumable": feature.consumable,
                    "active": feature.active,
                    "reset_interval_type": interval_type,
                    "reset_interval_count": interval_count,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist feature")
            return _row_to_feature(row)

    def get_feature(self, feature_id: int) -> Optional[Feature]:
        with self._cursor() as cursor:
            cursor.execute(
                f"SELECT * FROM {self.tables.features} WHERE id = %s LIMIT 1",
                (feature_id,),
            )
            row = cursor.fetchone()
        return _row_to_feature(row) if row else None

    def get_feature_by_slug(self, slug: str) -> Optional[Feature]:
        with self._cursor() as cursor:
            cursor.execute(
                f"SELECT * FROM {self.tables.features} WHERE slug = %s AND deleted_at IS NULL LIMIT 1",
                (slug,),
            )
            row = cursor.fetchone()
        return _row_to_feature(row) if row else None

    def list_features(self, *, active: Optional[bool] = None) -> Sequence[Feature]:
        query = f"SELECT * FROM {self.tables.features} WHERE deleted_at IS NULL"
        params: List[object] = []
        if active is not None:
            query += " AND active = %s"
            params.append(active)
        with self._cursor() as cursor:
            cursor.execute(query + " ORDER BY id", params)
            rows = cursor.fetchall()
        return [_row_to_feature(row) for row in rows]

    def set_feature_active(self, feature_id: int, active: bool) -> Optional[Feature]:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                UPDATE {self.tables.features}
                SET active = %s, updated_at = NOW()
                WHERE id = %s AND deleted_at IS NULL
                RETURNING *
                """,
                (active, feature_id),
            )
            row = cursor.fetchone()
        return _row_to_feature(row) if row else None

    def soft_delete_feature(self, feature_id: int, deleted_at: datetime) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                UPDATE {self.tables.features}
                SET deleted_at = %s, updated_at = NOW()
                WHERE id = %s AND deleted_at IS NULL
                """,
                (deleted_at, feature_id),
            )
            return cursor.rowcount > 0

    def save_plan(self, plan: Plan) -> Plan:
        """Insert or update a plan keyed by slug. Feature grants are managed separately."""

        trial_type, trial_count = _interval_columns(plan.trial_period)
        grace_type, grace_count = _interval_columns(plan.grace_period)
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                INSERT INTO {self.tables.plans} (
                    slug,
                    name,
                    active,
                    price,
                    currency,
                    interval_type,
                    interval_count,
                    trial_interval_type,
                    trial_interval_count,
                    grace_interval_type,
                    grace_interval_count
                )
                VALUES (%(slug)s, %(name)s, %(active)s, %(price)s, %(currency)s,
                        %(interval_type)s, %(interval_count)s,
                        %(trial_interval_type)s, %(trial_interval_count)s,
                        %(grace_interval_type)s, %(grace_interval_count)s)
                ON CONFLICT (slug) DO UPDATE SET
                    name = EXCLUDED.name,
                    active = EXCLUDED.active,
                    price = EXCLUDED.price,
                    currency = EXCLUDED.currency,
                    interval_type = EXCLUDED.interval_type,
                    interval_count = EXCLUDED.interval_count,
                    trial_interval_type = EXCLUDED.trial_interval_type,
                    trial_interval_count = EXCLUDED.trial_interval_count,
                    grace_interval_type = EXCLUDED.grace_interval_type,
                    grace_interval_count = EXCLUDED.grace_interval_count,
                    deleted_at = NULL,
                    updated_at = NOW()
                RETURNING *
                """,
                {
                    "slug": plan.slug,
                    "name": plan.name,
                    "active": plan.active,
                    "price": plan.price,
                    "currency": plan.currency,
                    "interval_type": plan.recurrence.interval_type.value,
                    "interval_count": plan.recurrence.count,
                    "trial_interval_type": trial_type,
                    "trial_interval_count": trial_count,
                    "grace_interval_type": grace_type,
                    "grace_interval_count": grace_count,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist plan")
            return self._with_features(cursor, [row])[0]

    def get_plan(self, plan_id: int) -> Optional[Plan]:
        plans = self.get_plans([plan_id])
        return plans[0] if plans else None

    def get_plan_by_slug(self, slug: str) -> Optional[Plan]:
        with self._cursor() as cursor:
            cursor.execute(
                f"SELECT * FROM {self.tables.plans} WHERE slug = %s AND deleted_at IS NULL LIMIT 1",
                (slug,),
            )
            rows = cursor.fetchall()
            plans = self._with_features(cursor, rows)
        return plans[0] if plans else None

    def get_plans(self, plan_ids: Sequence[int]) -> Sequence[Plan]:
        if not plan_ids:
            return []
        with self._cursor() as cursor:
            cursor.execute(
                f"SELECT * FROM {self.tables.plans} WHERE id = ANY(%s::bigint[]) ORDER BY id",
                (list(plan_ids),),
            )
            rows = cursor.fetchall()
            return self._with_features(cursor, rows)

    def list_plans(self, *, active: Optional[bool] = None) -> Sequence[Plan]:
        query = f"SELECT * FROM {self.tables.plans} WHERE deleted_at IS NULL"
        params: List[object] = []
        if active is not None:
            query += " AND active = %s"
            params.append(active)
        with self._cursor() as cursor:
            cursor.execute(query + " ORDER BY id", params)
            rows = cursor.fetchall()
            return self._with_features(cursor, rows)

    def list_plans_granting(self, feature_id: int) -> Sequence[Plan]:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT p.*
                FROM {self.tables.plans} p
                JOIN {self.tables.feature_plan} fp ON fp.plan_id = p.id
                WHERE fp.feature_id = %s AND p.deleted_at IS NULL
                ORDER BY p.id
                """,
                (feature_id,),
            )
            rows = cursor.fetchall()
            return self._with_features(cursor, rows)

    def set_plan_active(self, plan_id: int, active: bool) -> Optional[Plan]:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                UPDATE {self.tables.plans}
                SET active = %s, updated_at = NOW()
                WHERE id = %s AND deleted_at IS NULL
                RETURNING *
                """,
                (active, plan_id),
            )
            rows = cursor.fetchall()
            plans = self._with_features(cursor, rows)
        return plans[0] if plans else None

    def soft_delete_plan(self, plan_id: int, deleted_at: datetime) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                UPDATE {self.tables.plans}
                SET deleted_at = %s, updated_at = NOW()
                WHERE id = %s AND deleted_at IS NULL
                """,
                (deleted_at, plan_id),
            )
            return cursor.rowcount > 0

    def attach_feature(self, plan_id: int, feature_id: int, units: Optional[int]) -> Plan:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                INSERT INTO {self.tables.feature_plan} (feature_id, plan_id, units)
                VALUES (%s, %s, %s)
                ON CONFLICT (feature_id, plan_id) DO UPDATE SET
                    units = EXCLUDED.units,
                    updated_at = NOW()
                """,
                (feature_id, plan_id, units),
            )
            cursor.execute(f"SELECT * FROM {self.tables.plans} WHERE id = %s", (plan_id,))
            rows = cursor.fetchall()
            plans = self._with_features(cursor, rows)
        if not plans:
            raise RuntimeError("Failed to attach feature to plan")
        return plans[0]

    def _with_features(self, cursor: PgCursor, plan_rows: Sequence[dict]) -> List[Plan]:
        if not plan_rows:
            return []
        plan_ids = [row["id"] for row in plan_rows]
        cursor.execute(
            f"""
            SELECT fp.plan_id AS grant_plan_id, fp.units AS grant_units, f.*
            FROM {self.tables.feature_plan} fp
            JOIN {self.tables.features} f ON f.id = fp.feature_id
            WHERE fp.plan_id = ANY(%s::bigint[]) AND f.deleted_at IS NULL
            ORDER BY fp.id
            """,
            (plan_ids,),
        )
        grants: Dict[int, List[PlanFeature]] = defaultdict(list)
        for row in cursor.fetchall():
            units = row.get("grant_units")
            grants[row["grant_plan_id"]].append(
                PlanFeature(feature=_row_to_feature(row), units=None if units is None else int(units))
            )
        return [_row_to_plan(row, grants.get(row["id"], ())) for row in plan_rows]


__all__ = ["PostgresCatalogRepository"]
