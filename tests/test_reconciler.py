"""Tests for multi-product reconciliation and the migration orchestrator."""
import asyncio
from datetime import date

import pytest

from license_parser import LicenseParser, parse_license
from models import LegacyLicense, ProductStatus, StoredFeature
from reconciler import MigrationOrchestrator, MigrationStats, reconcile


NOW = date(2025, 12, 1)


@pytest.mark.unit
class TestReconcile:
    """Tests for the pure reconcile function."""

    def test_multi_product_split(self, legacy_license, multi_product_features, multi_product_text):
        groups = parse_license(multi_product_text).products
        plan = reconcile(legacy_license, multi_product_features, groups, NOW)

        (first, first_ids), (second, second_ids) = plan.assignments
        assert first.license_id == legacy_license.id
        assert first.update_license is True
        assert first.part_number == "9409"
        assert first_ids == [1]

        assert second.creates_license
        assert second.part_number == "9410"
        assert second.quantity == 2
        assert second.status == ProductStatus.WARNING
        assert second.latest_expiry == date(2025, 12, 31)
        assert second_ids == [2, 3]

    def test_link_once_skips_linked_rows(self, legacy_license, multi_product_features, multi_product_text):
        features = [f.model_copy(update={"product_id": 99}) if f.id == 2 else f
                    for f in multi_product_features]
        groups = parse_license(multi_product_text).products
        plan = reconcile(legacy_license, features, groups, NOW)
        assert sorted(plan.linked_feature_ids) == [1, 3]

    def test_duplicate_rows_claimed_once(self, legacy_license, multi_product_text):
        features = [
            StoredFeature(id=1, license_id=1, feature_name="NX_DESIGN", serial_number="1234567890",
                          expiry_date=date(2026, 8, 4)),
            StoredFeature(id=2, license_id=1, feature_name="NX_DESIGN", serial_number="1234567890",
                          expiry_date=date(2026, 8, 4)),
        ]
        groups = parse_license(multi_product_text).products
        plan = reconcile(legacy_license, features, groups, NOW)
        assert plan.linked_feature_ids == [1]
        # the Teamcenter group claims nothing, so no sibling license is planned
        assert len(plan.assignments) == 1
        assert not plan.assignments[0][0].creates_license

    def test_unmatched_rows_give_empty_plan(self, legacy_license, multi_product_text):
        features = [StoredFeature(id=9, license_id=1, feature_name="EXTRA",
                                  expiry_date=date(2026, 1, 1))]
        groups = parse_license(multi_product_text).products
        assert reconcile(legacy_license, features, groups, NOW).is_empty

    def test_single_product_synthesized(self, legacy_license, multi_product_features):
        plan = reconcile(legacy_license, multi_product_features, None, NOW)
        assert len(plan.assignments) == 1
        assignment, ids = plan.assignments[0]
        assert assignment.license_id == legacy_license.id
        assert assignment.part_number == "9409"
        assert assignment.product_name == "NX Mach 3 Product Design"
        assert assignment.quantity == 1
        assert assignment.earliest_expiry == date(2025, 12, 31)
        assert assignment.latest_expiry == date(2026, 8, 4)
        assert assignment.status == ProductStatus.WARNING
        assert ids == [1, 2, 3]

    def test_single_group_uses_single_path(self, legacy_license, multi_product_features, single_product_text):
        groups = parse_license(single_product_text).products
        plan = reconcile(legacy_license, multi_product_features, groups, NOW)
        assert len(plan.assignments) == 1
        assert plan.assignments[0][0].update_license is False

    def test_expired_feature_marks_product_expired(self, legacy_license):
        features = [StoredFeature(id=1, license_id=1, feature_name="OLD", expiry_date=date(2024, 1, 1))]
        assignment, _ = reconcile(legacy_license, features, None, NOW).assignments[0]
        assert assignment.status == ProductStatus.EXPIRED

    def test_nothing_unlinked_is_empty_plan(self, legacy_license, multi_product_features, multi_product_text):
        linked = [f.model_copy(update={"product_id": 1}) for f in multi_product_features]
        groups = parse_license(multi_product_text).products
        assert reconcile(legacy_license, linked, groups, NOW).is_empty
        assert reconcile(legacy_license, linked, None, NOW).is_empty


@pytest.mark.asyncio
async def test_repository_apply_multi_product(repo, legacy_license, multi_product_features, multi_product_text):
    groups = parse_license(multi_product_text).products
    plan = reconcile(legacy_license, multi_product_features, groups, NOW)

    result = await repo.apply_plan(plan)

    assert (result.products_created, result.licenses_created, result.features_linked) == (2, 1, 3)
    sibling = repo.licenses[2]
    assert sibling.site_id == legacy_license.site_id
    assert sibling.part_number == "9410"
    assert repo.licenses[1].part_name == "NX Mach 3 Product Design"
    assert repo.features[2].license_id == 2
    assert repo.features[2].product_id == repo.features[3].product_id
    assert repo.features[1].product_id != repo.features[2].product_id


@pytest.mark.asyncio
async def test_reapplying_same_plan_links_nothing(repo, legacy_license, multi_product_features):
    plan = reconcile(legacy_license, multi_product_features, None, NOW)
    first = await repo.apply_plan(plan)
    second = await repo.apply_plan(plan)
    assert first.features_linked == 3
    assert second.features_linked == 0


@pytest.mark.asyncio
async def test_rerun_with_leftover_row_creates_nothing(repo, legacy_license, multi_product_text):
    repo.add_feature(StoredFeature(id=4, license_id=1, feature_name="EXTRA",
                                   expiry_date=date(2026, 1, 1)))
    groups = parse_license(multi_product_text).products

    first = await repo.apply_plan(
        reconcile(legacy_license, await repo.get_license_features(1), groups, NOW))
    second = await repo.apply_plan(
        reconcile(legacy_license, await repo.get_license_features(1), groups, NOW))

    assert (first.products_created, first.licenses_created, first.features_linked) == (2, 1, 3)
    assert (second.products_created, second.licenses_created, second.features_linked) == (0, 0, 0)
    assert len(repo.licenses) == 2
    assert len(repo.products) == 2
    assert not repo.features[4].is_linked


@pytest.mark.asyncio
async def test_orchestrator_today_policy_uses_clock(tmp_path, repo, legacy_license, multi_product_text):
    text = multi_product_text.replace("31 Dec 2025 2234567891", "31 Xyz 2025 2234567891")
    (tmp_path / legacy_license.file_name).write_text(text, encoding="utf-8")
    orchestrator = MigrationOrchestrator(repo, upload_dir=str(tmp_path),
                                         parser=LicenseParser(date_policy="today"),
                                         clock=lambda: NOW)

    stats = await orchestrator.run()

    assert stats.failed_licenses == 0
    assert stats.features_linked == 3
    assert repo.products[2]["earliest_expiry_date"] == NOW


@pytest.mark.asyncio
async def test_orchestrator_reparses_upload(tmp_path, repo, legacy_license, multi_product_text):
    (tmp_path / legacy_license.file_name).write_text(multi_product_text, encoding="utf-8")
    orchestrator = MigrationOrchestrator(repo, upload_dir=str(tmp_path), clock=lambda: NOW)

    stats = await orchestrator.run()

    assert stats.processed_licenses == 1
    assert stats.multi_product_licenses == 1
    assert stats.licenses_created == 1
    assert stats.features_linked == 3
    assert stats.verification == {
        "license_count": 2, "product_count": 2,
        "linked_features": 3, "unlinked_features": 0,
    }
    assert stats.warnings == []


@pytest.mark.asyncio
async def test_orchestrator_missing_upload_falls_back(tmp_path, repo):
    orchestrator = MigrationOrchestrator(repo, upload_dir=str(tmp_path), clock=lambda: NOW)
    stats = await orchestrator.run()
    assert stats.multi_product_licenses == 0
    assert stats.products_created == 1
    assert stats.features_linked == 3


@pytest.mark.asyncio
async def test_orchestrator_upload_without_content_block(tmp_path, repo, legacy_license):
    (tmp_path / legacy_license.file_name).write_text("HOSTID=ABC\nno body here\n", encoding="utf-8")
    orchestrator = MigrationOrchestrator(repo, upload_dir=str(tmp_path), clock=lambda: NOW)
    stats = await orchestrator.run()
    assert stats.products_created == 1
    assert any("no License Content block" in w for w in stats.warnings)


@pytest.mark.asyncio
async def test_second_run_links_nothing(tmp_path, repo, legacy_license, multi_product_text):
    (tmp_path / legacy_license.file_name).write_text(multi_product_text, encoding="utf-8")
    orchestrator = MigrationOrchestrator(repo, upload_dir=str(tmp_path), clock=lambda: NOW)

    await orchestrator.run()
    again = await orchestrator.run()

    assert again.total_licenses == 0
    assert again.features_linked == 0
    assert again.verification["product_count"] == 2


@pytest.mark.asyncio
async def test_concurrent_reconciliation_of_same_license(repo, legacy_license):
    orchestrator = MigrationOrchestrator(repo, clock=lambda: NOW)
    stats = MigrationStats()

    results = await asyncio.gather(
        orchestrator.reconcile_license(legacy_license, stats),
        orchestrator.reconcile_license(legacy_license, stats),
    )

    assert sorted(r.features_linked for r in results) == [0, 3]
    assert len(repo.products) == 1
    assert stats.skipped_licenses == 1
    assert orchestrator._locks == {}
    assert not orchestrator._lock_users


@pytest.mark.asyncio
async def test_failure_does_not_stop_run(repo, legacy_license):
    repo.add_license(LegacyLicense(id=5, part_number="1", part_name="Orphan"))
    repo.add_feature(StoredFeature(id=50, license_id=5, feature_name="X", expiry_date=date(2030, 1, 1)))

    class Boom(Exception):
        pass

    original = repo.get_license_features

    async def flaky(license_id):
        if license_id == 1:
            raise Boom("disk on fire")
        return await original(license_id)

    repo.get_license_features = flaky
    stats = await MigrationOrchestrator(repo, clock=lambda: NOW).run()

    assert stats.failed_licenses == 1
    assert stats.processed_licenses == 1
    assert "License 1" in stats.errors[0]
    assert stats.verification["unlinked_features"] == 3
    assert stats.warnings
