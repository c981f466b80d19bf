"""
asyncpg_repository.py — PostgreSQL repository for the product migration.

Implements the LicenseRepository interface using an asyncpg connection pool.
Each plan is applied inside a single transaction that first locks the source
license row, so concurrent migrations of the same record serialize.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

import asyncpg

from models import LegacyLicense, StoredFeature
from reconciler import ApplyResult, LicenseRepository, ReconciliationPlan

logger = logging.getLogger(__name__)

# ── Connection Pool Manager ──────────────────────────────────────────────────

class DatabasePool:
    """Manages asyncpg connection pool lifecycle."""

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 5):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        self._pool = await asyncpg.create_pool(
            self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            command_timeout=30,
        )
        logger.info(
            "Database pool initialized (min=%d, max=%d)", self.min_size, self.max_size
        )

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")
        return self._pool

    @asynccontextmanager
    async def acquire(self):
        async with self.pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self):
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            logger.info("Database pool closed")


# ── Schema ───────────────────────────────────────────────────────────────────

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS products (
        id SERIAL PRIMARY KEY,
        license_id INTEGER NOT NULL REFERENCES licenses(id),
        part_number TEXT,
        product_name TEXT,
        quantity INTEGER NOT NULL DEFAULT 1,
        earliest_expiry_date DATE,
        latest_expiry_date DATE,
        status TEXT DEFAULT 'active',
        created_at TIMESTAMPTZ DEFAULT now()
    )
    """,
    "ALTER TABLE license_features ADD COLUMN IF NOT EXISTS product_id INTEGER REFERENCES products(id)",
    "CREATE INDEX IF NOT EXISTS idx_products_license_expiry ON products(license_id, earliest_expiry_date)",
    "CREATE INDEX IF NOT EXISTS idx_features_product_expiry ON license_features(product_id, expiry_date)",
]


def _affected_rows(status: str) -> int:
    """asyncpg returns command tags like 'UPDATE 3'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


# ── License Repository ───────────────────────────────────────────────────────

class AsyncPGLicenseRepository(LicenseRepository):
    """
    Production repository implementing the LicenseRepository interface.

    - ensure_schema() -> None
    - list_unmigrated_licenses() -> list[LegacyLicense]
    - get_license_features(license_id) -> list[StoredFeature]
    - apply_plan(plan) -> ApplyResult
    - migration_stats() -> dict
    """

    def __init__(self, db: DatabasePool):
        self.db = db

    async def ensure_schema(self) -> None:
        async with self.db.transaction() as conn:
            for stmt in SCHEMA_STATEMENTS:
                await conn.execute(stmt)
        logger.info("Product schema ready")

    async def list_unmigrated_licenses(self) -> list[LegacyLicense]:
        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT l.*
                FROM licenses l
                WHERE NOT EXISTS (SELECT 1 FROM products p WHERE p.license_id = l.id)
                ORDER BY l.id
                """
            )
            return [LegacyLicense(**dict(r)) for r in rows]

    async def get_license_features(self, license_id: int) -> list[StoredFeature]:
        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, license_id, feature_name, serial_number, expiry_date, product_id
                FROM license_features
                WHERE license_id = $1
                ORDER BY id
                """,
                license_id,
            )
            return [StoredFeature(**dict(r)) for r in rows]

    async def apply_plan(self, plan: ReconciliationPlan) -> ApplyResult:
        result = ApplyResult()
        async with self.db.transaction() as conn:
            await conn.execute(
                "SELECT id FROM licenses WHERE id = $1 FOR UPDATE", plan.source_license_id
            )

            for assignment, feature_ids in plan.assignments:
                license_id = assignment.license_id
                if assignment.creates_license:
                    license_id = await conn.fetchval(
                        """
                        INSERT INTO licenses (
                            site_id, host_id, part_number, part_name, file_name,
                            manager_name, department, client_name, upload_date, memo
                        )
                        SELECT site_id, host_id, $2, $3, file_name,
                               manager_name, department, client_name, upload_date, memo
                        FROM licenses WHERE id = $1
                        RETURNING id
                        """,
                        plan.source_license_id,
                        assignment.part_number,
                        assignment.product_name,
                    )
                    result.licenses_created += 1
                elif assignment.update_license:
                    await conn.execute(
                        "UPDATE licenses SET part_number = $1, part_name = $2 WHERE id = $3",
                        assignment.part_number, assignment.product_name, license_id,
                    )

                product_id = await conn.fetchval(
                    """
                    INSERT INTO products (
                        license_id, part_number, product_name, quantity,
                        earliest_expiry_date, latest_expiry_date, status
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                    RETURNING id
                    """,
                    license_id,
                    assignment.part_number,
                    assignment.product_name,
                    assignment.quantity,
                    assignment.earliest_expiry,
                    assignment.latest_expiry,
                    assignment.status.value,
                )
                result.products_created += 1

                if feature_ids:
                    status = await conn.execute(
                        """
                        UPDATE license_features
                        SET product_id = $1, license_id = $2
                        WHERE id = ANY($3::int[]) AND license_id = $4 AND product_id IS NULL
                        """,
                        product_id, license_id, feature_ids, plan.source_license_id,
                    )
                    result.features_linked += _affected_rows(status)

        logger.info(
            "License %d: %d product(s), %d new license(s), %d feature(s) linked",
            plan.source_license_id, result.products_created,
            result.licenses_created, result.features_linked,
        )
        return result

    async def migration_stats(self) -> dict[str, int]:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT
                    (SELECT COUNT(*) FROM licenses) AS license_count,
                    (SELECT COUNT(*) FROM products) AS product_count,
                    (SELECT COUNT(*) FROM license_features WHERE product_id IS NOT NULL) AS linked_features,
                    (SELECT COUNT(*) FROM license_features WHERE product_id IS NULL) AS unlinked_features
                """
            )
            return {k: int(v) for k, v in dict(row).items()}
