"""
License Tracker — Multi-Product Reconciliation (migration)

Bridges legacy license rows → product rows.
Responsibilities:
  1. Re-parse the original upload to detect multi-product documents
  2. Build a pure reconciliation plan (which product owns which feature)
  3. Hand the plan to the repository, which applies it in one transaction
  4. Link-once: only features with no product are ever claimed
  5. Post-run verification counts
"""
from __future__ import annotations
import asyncio
import logging
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Callable, Optional

from models import LegacyLicense, ProductGroup, ProductStatus, StoredFeature
from expiry import Now, document_status, local_now
from license_parser import LicenseParser, MissingContentBlock

logger = logging.getLogger(__name__)

# ============================================================
# Plan Types
# ============================================================

@dataclass
class ProductAssignment:
    """One product row to create, and which license row it belongs to."""
    index: int
    part_number: Optional[str]
    product_name: Optional[str]
    quantity: int = 1
    earliest_expiry: Optional[date] = None
    latest_expiry: Optional[date] = None
    status: ProductStatus = ProductStatus.ACTIVE
    # None → materialize a new sibling license sharing the source's site
    license_id: Optional[int] = None
    update_license: bool = False

    @property
    def creates_license(self) -> bool:
        return self.license_id is None


@dataclass
class ReconciliationPlan:
    source_license_id: int
    assignments: list[tuple[ProductAssignment, list[int]]] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.assignments

    @property
    def linked_feature_ids(self) -> list[int]:
        return [fid for _, ids in self.assignments for fid in ids]


@dataclass
class ApplyResult:
    products_created: int = 0
    licenses_created: int = 0
    features_linked: int = 0

# ============================================================
# Pure Reconciliation
# ============================================================

def reconcile(
    license: LegacyLicense,
    stored_features: list[StoredFeature],
    groups: Optional[list[ProductGroup]],
    now: Now,
) -> ReconciliationPlan:
    """
    Decide product rows and feature linkage for one legacy license.
    Never touches storage. Features already linked to a product are ignored.
    """
    plan = ReconciliationPlan(source_license_id=license.id)
    own = [f for f in stored_features if f.license_id == license.id]
    unlinked = [f for f in own if not f.is_linked]
    if not unlinked:
        return plan

    if groups and len(groups) > 1:
        claimed: set[int] = set()
        for index, group in enumerate(groups):
            assignment = ProductAssignment(
                index=index,
                part_number=group.part_info.part_number,
                product_name=group.part_info.part_name,
                quantity=group.part_info.quantity or 1,
                earliest_expiry=group.earliest_expiry,
                latest_expiry=group.latest_expiry,
                status=document_status((f.expiry_date for f in group.features), now),
                license_id=license.id if index == 0 else None,
                update_license=index == 0,
            )
            ids = []
            for feature in group.features:
                match = next((s for s in unlinked
                              if s.id not in claimed
                              and s.feature_name == feature.feature_name
                              and (s.serial_number or None) == feature.serial_number), None)
                if match is None:
                    logger.debug("License %d: no unlinked row for %s/%s",
                                 license.id, feature.feature_name, feature.serial_number)
                    continue
                claimed.add(match.id)
                ids.append(match.id)
            # siblings only for groups that claim rows
            if ids or index == 0:
                plan.assignments.append((assignment, ids))
        if not claimed:
            logger.info("License %d: no unlinked row matches the re-parsed upload", license.id)
            plan.assignments.clear()
        return plan

    expiries = [f.expiry_date for f in own if f.expiry_date]
    assignment = ProductAssignment(
        index=0,
        part_number=license.part_number,
        product_name=license.part_name,
        quantity=1,
        earliest_expiry=min(expiries) if expiries else None,
        latest_expiry=max(expiries) if expiries else None,
        status=document_status(expiries, now),
        license_id=license.id,
    )
    plan.assignments.append((assignment, [f.id for f in unlinked]))
    return plan

# ============================================================
# Database Abstraction Layer (Repository Pattern)
# ============================================================

class LicenseRepository:
    """
    Storage surface the migration needs. Implementations must apply a plan
    atomically and only link features whose product_id is still NULL.
    """

    async def list_unmigrated_licenses(self) -> list[LegacyLicense]:
        raise NotImplementedError

    async def get_license_features(self, license_id: int) -> list[StoredFeature]:
        raise NotImplementedError

    async def apply_plan(self, plan: ReconciliationPlan) -> ApplyResult:
        raise NotImplementedError

    async def migration_stats(self) -> dict[str, int]:
        raise NotImplementedError

# ============================================================
# In-Memory Repository (for testing / local dev)
# ============================================================

class InMemoryRepository(LicenseRepository):
    """In-memory implementation for testing without a database."""

    def __init__(self):
        self.licenses: dict[int, LegacyLicense] = {}
        self.features: dict[int, StoredFeature] = {}
        self.products: dict[int, dict] = {}
        self._next_license_id = 1
        self._next_product_id = 1

    def add_license(self, license: LegacyLicense) -> None:
        self.licenses[license.id] = license
        self._next_license_id = max(self._next_license_id, license.id + 1)

    def add_feature(self, feature: StoredFeature) -> None:
        self.features[feature.id] = feature

    async def list_unmigrated_licenses(self) -> list[LegacyLicense]:
        with_products = {p['license_id'] for p in self.products.values()}
        return [l for lid, l in sorted(self.licenses.items()) if lid not in with_products]

    async def get_license_features(self, license_id: int) -> list[StoredFeature]:
        return [f for _, f in sorted(self.features.items()) if f.license_id == license_id]

    async def apply_plan(self, plan: ReconciliationPlan) -> ApplyResult:
        result = ApplyResult()
        source = self.licenses[plan.source_license_id]

        for assignment, feature_ids in plan.assignments:
            license_id = assignment.license_id
            if assignment.creates_license:
                license_id = self._next_license_id
                self._next_license_id += 1
                self.licenses[license_id] = source.model_copy(update={
                    'id': license_id,
                    'part_number': assignment.part_number,
                    'part_name': assignment.product_name,
                })
                result.licenses_created += 1
            elif assignment.update_license:
                self.licenses[license_id] = self.licenses[license_id].model_copy(update={
                    'part_number': assignment.part_number,
                    'part_name': assignment.product_name,
                })

            product_id = self._next_product_id
            self._next_product_id += 1
            self.products[product_id] = {
                'id': product_id,
                'license_id': license_id,
                'part_number': assignment.part_number,
                'product_name': assignment.product_name,
                'quantity': assignment.quantity,
                'earliest_expiry_date': assignment.earliest_expiry,
                'latest_expiry_date': assignment.latest_expiry,
                'status': assignment.status.value,
            }
            result.products_created += 1

            for fid in feature_ids:
                f = self.features.get(fid)
                if f is None or f.is_linked or f.license_id != plan.source_license_id:
                    continue
                self.features[fid] = f.model_copy(update={
                    'product_id': product_id, 'license_id': license_id})
                result.features_linked += 1
        return result

    async def migration_stats(self) -> dict[str, int]:
        linked = sum(1 for f in self.features.values() if f.is_linked)
        return {
            'license_count': len(self.licenses),
            'product_count': len(self.products),
            'linked_features': linked,
            'unlinked_features': len(self.features) - linked,
        }

# ============================================================
# Migration Orchestrator
# ============================================================

@dataclass
class MigrationStats:
    """Tracks stats for a single migration run."""
    total_licenses: int = 0
    processed_licenses: int = 0
    failed_licenses: int = 0
    skipped_licenses: int = 0
    multi_product_licenses: int = 0
    products_created: int = 0
    licenses_created: int = 0
    features_linked: int = 0
    verification: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class MigrationOrchestrator:
    """
    Drives the migration:
      legacy license → re-parse upload → plan → transactional apply
    At most one reconciliation per license is in flight at a time.
    """

    def __init__(
        self,
        repo: LicenseRepository,
        upload_dir: Optional[str] = None,
        parser: Optional[LicenseParser] = None,
        clock: Optional[Callable[[], Now]] = None,
    ):
        self.repo = repo
        self.upload_dir = Path(upload_dir) if upload_dir else None
        self.parser = parser or LicenseParser()
        self.clock = clock or (lambda: datetime.now().astimezone())
        self._locks: dict[int, asyncio.Lock] = {}
        self._lock_users: Counter[int] = Counter()

    # ----------------------------------------------------------
    # Public API
    # ----------------------------------------------------------

    async def run(self) -> MigrationStats:
        stats = MigrationStats()
        licenses = await self.repo.list_unmigrated_licenses()
        stats.total_licenses = len(licenses)
        logger.info("Licenses to migrate: %d", len(licenses))

        for license in licenses:
            try:
                await self.reconcile_license(license, stats)
                stats.processed_licenses += 1
            except Exception as e:
                # one bad record must not block the rest
                stats.failed_licenses += 1
                err = f"License {license.id} migration failed: {e}"
                stats.errors.append(err)
                logger.exception(err)

        await self.verify(stats)
        return stats

    async def reconcile_license(self, license: LegacyLicense, stats: MigrationStats) -> ApplyResult:
        async with self._license_lock(license.id):
            now = self.clock()
            features = await self.repo.get_license_features(license.id)
            groups = await self._load_product_groups(license, stats, now)
            plan = reconcile(license, features, groups, now)

            if plan.is_empty:
                stats.skipped_licenses += 1
                logger.info("License %d: nothing to link", license.id)
                return ApplyResult()

            if len(plan.assignments) > 1:
                stats.multi_product_licenses += 1
                logger.info("License %d: %d products found", license.id, len(plan.assignments))

            result = await self.repo.apply_plan(plan)
            stats.products_created += result.products_created
            stats.licenses_created += result.licenses_created
            stats.features_linked += result.features_linked
            return result

    async def verify(self, stats: MigrationStats) -> None:
        counts = await self.repo.migration_stats()
        stats.verification = counts
        logger.info(
            "Migration result: %d licenses, %d products, %d linked, %d unlinked",
            counts['license_count'], counts['product_count'],
            counts['linked_features'], counts['unlinked_features'],
        )
        if counts['unlinked_features'] > 0:
            msg = f"{counts['unlinked_features']} feature(s) not linked to a product"
            stats.warnings.append(msg)
            logger.warning(msg)

    # ----------------------------------------------------------
    # Internal
    # ----------------------------------------------------------

    @asynccontextmanager
    async def _license_lock(self, license_id: int):
        """Per-license lock, dropped once no coroutine holds or awaits it."""
        lock = self._locks.setdefault(license_id, asyncio.Lock())
        self._lock_users[license_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[license_id] -= 1
            if not self._lock_users[license_id]:
                del self._lock_users[license_id]
                del self._locks[license_id]

    async def _load_product_groups(
        self, license: LegacyLicense, stats: MigrationStats, now: Now,
    ) -> Optional[list[ProductGroup]]:
        """Re-parse the original upload if it is still on disk."""
        if self.upload_dir is None or not license.file_name:
            return None
        path = self.upload_dir / license.file_name
        if not await asyncio.to_thread(path.is_file):
            logger.info("License %d: upload %s missing, using stored data", license.id, path.name)
            return None

        text = await asyncio.to_thread(path.read_text, encoding='utf-8', errors='replace')
        today = now.date() if isinstance(now, datetime) else now
        try:
            parsed = self.parser.parse(text, today=today)
        except MissingContentBlock:
            stats.warnings.append(f"License {license.id}: {path.name} has no License Content block")
            logger.warning("License %d: %s has no License Content block", license.id, path.name)
            return None
        return parsed.products

# ============================================================
# CLI / Script Entry Point
# ============================================================

async def migrate(settings=None) -> MigrationStats:
    """Run the product migration against the configured PostgreSQL database."""
    from config import get_settings
    from asyncpg_repository import AsyncPGLicenseRepository, DatabasePool

    settings = settings or get_settings()
    db = DatabasePool(settings.asyncpg_dsn, settings.db_pool_min, settings.db_pool_max)
    await db.initialize()
    try:
        repo = AsyncPGLicenseRepository(db)
        await repo.ensure_schema()
        orchestrator = MigrationOrchestrator(
            repo,
            upload_dir=settings.upload_dir,
            parser=LicenseParser.from_settings(settings),
            clock=lambda: local_now(settings.timezone),
        )
        return await orchestrator.run()
    finally:
        await db.close()


if __name__ == '__main__':
    from config import configure_logging
    configure_logging()
    result = asyncio.run(migrate())
    raise SystemExit(1 if result.failed_licenses else 0)
