"""Tests for read-through variant access and the optimistic write path."""

from datetime import datetime, timedelta, timezone

import pytest

from ablib.core.context import build_context
from ablib.core.errors import StorageQuotaExceededError, VariantOperationError
from ablib.models.schemas.assignment import UserVariant
from ablib.models.schemas.storage import SyncAction, SyncOperationType
from ablib.services.variant_service import VariantService, merge_variants
from ablib.storage.cache_store import VARIANTS_KEY, VARIANTS_TIMESTAMP_KEY, LocalCacheStore
from conftest import make_experiment

OLD = datetime(2020, 1, 1, tzinfo=timezone.utc)
NEW = OLD + timedelta(days=1)


def record(experiment_key="exp-key", variant="A", updated_at=OLD, user_id="user-123"):
    return UserVariant(
        user_id=user_id, experiment_key=experiment_key, variant=variant, updated_at=updated_at
    )


def cache_variants(ctx, variants, timestamp=None):
    ctx.store.set(VARIANTS_KEY, [v.model_dump(mode="json") for v in variants])
    if timestamp is not None:
        ctx.store.set(VARIANTS_TIMESTAMP_KEY, timestamp)


class VariantQuotaStore(LocalCacheStore):
    def set(self, key, value):
        if key == VARIANTS_KEY:
            raise StorageQuotaExceededError(key)
        super().set(key, value)


@pytest.fixture
def service(ctx):
    return VariantService(ctx)


class TestMergeVariants:
    def test_newer_record_wins(self):
        merged = merge_variants([record(variant="A", updated_at=OLD)], [record(variant="B", updated_at=NEW)])
        assert [v.variant for v in merged] == ["B"]

    def test_older_incoming_record_is_ignored(self):
        merged = merge_variants([record(variant="A", updated_at=NEW)], [record(variant="B", updated_at=OLD)])
        assert [v.variant for v in merged] == ["A"]

    def test_distinct_keys_are_kept(self):
        merged = merge_variants([record("e1")], [record("e2")])
        assert sorted(v.experiment_key for v in merged) == ["e1", "e2"]


class TestGetVariantsByUserId:
    @pytest.mark.asyncio
    async def test_local_miss_fetches_and_caches(self, service, ctx, adapter):
        adapter.variants[("user-123", "exp-key")] = record(variant="A")

        variants = await service.get_variants_by_user_id("user-123")

        assert [v.variant for v in variants] == ["A"]
        assert len(ctx.store.get(VARIANTS_KEY)) == 1
        assert ctx.store.get(VARIANTS_TIMESTAMP_KEY) > 0

    @pytest.mark.asyncio
    async def test_fresh_local_hit_skips_remote(self, service, adapter):
        adapter.variants[("user-123", "exp-key")] = record(variant="A")
        await service.get_variants_by_user_id("user-123")
        adapter.calls.clear()

        variants = await service.get_variants_by_user_id("user-123")

        assert [v.variant for v in variants] == ["A"]
        assert adapter.calls == []

    @pytest.mark.asyncio
    async def test_remote_failure_without_local_data_raises(self, service, adapter):
        adapter.fail = True

        with pytest.raises(VariantOperationError) as exc_info:
            await service.get_variants_by_user_id("user-123")

        assert exc_info.value.user_id == "user-123"
        assert exc_info.value.experiment_key == "all"

    @pytest.mark.asyncio
    async def test_remote_failure_falls_back_to_empty_cached_list(self, service, ctx, adapter):
        cache_variants(ctx, [])
        adapter.fail = True

        assert await service.get_variants_by_user_id("user-123") == []

    @pytest.mark.asyncio
    async def test_stale_list_is_returned_even_when_remote_is_down(self, service, ctx, adapter):
        cache_variants(ctx, [record(variant="A")], timestamp=0)
        adapter.fail = True

        variants = await service.get_variants_by_user_id("user-123")
        await ctx.runner.drain()

        assert [v.variant for v in variants] == ["A"]
        assert ctx.store.get(VARIANTS_KEY)[0]["variant"] == "A"

    @pytest.mark.asyncio
    async def test_stale_list_is_refreshed_in_background(self, service, ctx, adapter):
        cache_variants(ctx, [record(variant="A", updated_at=OLD)], timestamp=0)
        adapter.variants[("user-123", "exp-key")] = record(variant="B", updated_at=NEW)

        first = await service.get_variants_by_user_id("user-123")
        await ctx.runner.drain()
        second = await service.get_variants_by_user_id("user-123")

        assert [v.variant for v in first] == ["A"]
        assert [v.variant for v in second] == ["B"]

    @pytest.mark.asyncio
    async def test_other_users_records_are_ignored(self, service, ctx, adapter):
        cache_variants(ctx, [record(user_id="someone-else")])

        assert await service.get_variants_by_user_id("user-123") == []


class TestGetUserVariantByExperimentKey:
    @pytest.mark.asyncio
    async def test_local_hit(self, service, ctx, adapter):
        cache_variants(ctx, [record(variant="A")], timestamp=10**13)
        adapter.fail = True

        variant = await service.get_user_variant_by_experiment_key("user-123", "exp-key")

        assert variant.variant == "A"

    @pytest.mark.asyncio
    async def test_remote_hit_is_merged_into_the_cached_list(self, service, ctx, adapter):
        cache_variants(ctx, [record("e1", "A")])
        adapter.variants[("user-123", "exp-key")] = record(variant="B")

        variant = await service.get_user_variant_by_experiment_key("user-123", "exp-key")

        assert variant.variant == "B"
        cached = {item["experiment_key"]: item["variant"] for item in ctx.store.get(VARIANTS_KEY)}
        assert cached == {"e1": "A", "exp-key": "B"}

    @pytest.mark.asyncio
    async def test_unknown_assignment(self, service):
        assert await service.get_user_variant_by_experiment_key("user-123", "exp-key") is None

    @pytest.mark.asyncio
    async def test_remote_failure_raises_with_context(self, service, adapter):
        adapter.fail = True

        with pytest.raises(VariantOperationError) as exc_info:
            await service.get_user_variant_by_experiment_key("user-123", "exp-key")

        assert exc_info.value.experiment_key == "exp-key"
        assert "simulated outage" in str(exc_info.value)


class TestSaveUserVariant:
    @pytest.mark.asyncio
    async def test_overwrites_without_duplicating(self, service, ctx, adapter):
        await service.save_user_variant_for_experiment("user-123", "exp-key", "A")
        await service.save_user_variant_for_experiment("user-123", "exp-key", "B")

        cached = ctx.store.get(VARIANTS_KEY)
        assert [(item["experiment_key"], item["variant"]) for item in cached] == [("exp-key", "B")]

        queued = ctx.sync_queue.get_by_type(SyncOperationType.VARIANT)
        assert [op.action for op in queued] == [SyncAction.UPDATE, SyncAction.UPDATE]

        await ctx.runner.drain()

        assert adapter.variants[("user-123", "exp-key")].variant == "B"
        assert ctx.sync_queue.pending_count() == 0

    @pytest.mark.asyncio
    async def test_remote_outage_keeps_local_write(self, service, ctx, adapter):
        adapter.fail = True

        saved = await service.save_user_variant_for_experiment("user-123", "exp-key", "A")
        await ctx.runner.drain()

        assert saved.variant == "A"
        assert ctx.store.get(VARIANTS_KEY)[0]["variant"] == "A"
        assert ctx.sync_queue.get_all()[0].retries == 1

    @pytest.mark.asyncio
    async def test_local_quota_error_is_not_raised(self, adapter, settings, connectivity, store):
        ctx = build_context(
            adapter,
            settings,
            store=VariantQuotaStore(store.session_factory, quota_bytes=store.quota_bytes),
            connectivity=connectivity,
        )
        service = VariantService(ctx)

        saved = await service.save_user_variant_for_experiment("user-123", "exp-key", "A")
        await ctx.runner.drain()

        assert saved.variant == "A"
        assert adapter.variants[("user-123", "exp-key")].variant == "A"

    @pytest.mark.asyncio
    async def test_full_local_store_still_reaches_remote(self, adapter, settings, connectivity, store):
        store.set("filler", "x" * 300)
        full_store = LocalCacheStore(store.session_factory, quota_bytes=400)
        ctx = build_context(adapter, settings, store=full_store, connectivity=connectivity)
        service = VariantService(ctx)

        await service.save_user_variant_for_experiment("user-123", "exp-key", "A")
        assert ctx.sync_queue.pending_count() == 1
        await ctx.runner.drain()

        assert adapter.variants[("user-123", "exp-key")].variant == "A"
        assert ctx.sync_queue.pending_count() == 0


class TestAssignMissing:
    @pytest.mark.asyncio
    async def test_only_unassigned_experiments_are_bucketed(self, service, ctx, identity):
        cache_variants(ctx, [record("exp-key", "A")], timestamp=10**13)

        assigned = await service.assign_missing(
            identity, [make_experiment("exp-key"), make_experiment("exp-2")]
        )

        assert [(v.experiment_key, v.variant) for v in assigned] == [("exp-2", "B")]
        await ctx.runner.drain()
        cached = {item["experiment_key"]: item["variant"] for item in ctx.store.get(VARIANTS_KEY)}
        assert cached == {"exp-key": "A", "exp-2": "B"}

    @pytest.mark.asyncio
    async def test_assignment_made_elsewhere_is_adopted(self, service, ctx, adapter, identity):
        cache_variants(ctx, [record("exp-key", "A")], timestamp=10**13)
        adapter.variants[("user-123", "exp-2")] = record("exp-2", "Z")

        assigned = await service.assign_missing(
            identity, [make_experiment("exp-key"), make_experiment("exp-2")]
        )

        assert assigned == []
        cached = {item["experiment_key"]: item["variant"] for item in ctx.store.get(VARIANTS_KEY)}
        assert cached["exp-2"] == "Z"
        assert ctx.sync_queue.pending_count() == 0

    @pytest.mark.asyncio
    async def test_remote_outage_assigns_locally(self, service, ctx, adapter, identity):
        adapter.fail = True

        assigned = await service.assign_missing(identity, [make_experiment("exp-key")])
        await ctx.runner.drain()

        assert [(v.experiment_key, v.variant) for v in assigned] == [("exp-key", "B")]
        assert ctx.sync_queue.pending_count() == 1
