"""
Check Reconciler Tests.

============================================================
PURPOSE
============================================================
Tests for metric and tag reconciliation.

TEST PRINCIPLES:
- No update without a change (and no network either)
- Updates are idempotent across cycles
- Metric names are submitted verbatim
- A failed update leaves the caller's bundle untouched

============================================================
"""

import pytest

from check_manager import (
    BackendError,
    CheckBundleMetric,
    CheckReconciler,
    MetricMeta,
    plan,
)
from check_manager.reconciler import merge_tags


# ============================================================
# TAG MERGE TESTS
# ============================================================

class TestMergeTags:
    """Tests for merge_tags."""

    def test_append_new_tags(self):
        assert merge_tags(["a:b"], ["c:d", "a:b"], append=True) == ["a:b", "c:d"]

    def test_append_nothing_new(self):
        assert merge_tags(["a:b"], ["a:b"], append=True) is None

    def test_set_replaces(self):
        assert merge_tags(["a:b"], ["c:d"], append=False) == ["c:d"]

    def test_set_same_tags_in_other_order(self):
        assert merge_tags(["a:b", "c:d"], ["c:d", "a:b"], append=False) is None


# ============================================================
# PLAN TESTS
# ============================================================

class TestPlan:
    """Tests for plan()."""

    def test_no_changes(self, bundle_factory):
        result = plan(bundle_factory(), {"elmo": MetricMeta()})
        assert not result.needs_update

    def test_new_metric(self, bundle_factory):
        result = plan(bundle_factory(), {"elmo": MetricMeta(), "bigbird": MetricMeta()})

        assert result.needs_update
        assert list(result.new_metrics) == ["bigbird"]

    def test_changed_type(self, bundle_factory):
        result = plan(bundle_factory(), {"elmo": MetricMeta(type="text")})
        assert list(result.changed_metrics) == ["elmo"]

    def test_reactivated_metric(self, bundle_factory):
        bundle = bundle_factory(metrics=[CheckBundleMetric(name="elmo", status="available")])
        result = plan(bundle, {"elmo": MetricMeta()})
        assert list(result.changed_metrics) == ["elmo"]

    def test_tag_change(self, bundle_factory):
        result = plan(bundle_factory(), {}, tag_overrides={"elmo": ["color:red"]})
        assert result.tag_changes == {"elmo": ["color:red"]}

    def test_tags_for_unknown_metric_ignored(self, bundle_factory):
        result = plan(bundle_factory(), {}, tag_overrides={"oscar": ["mood:grouchy"]})
        assert not result.needs_update

    def test_tags_for_new_metric_kept(self, bundle_factory):
        result = plan(bundle_factory(), {"oscar": MetricMeta()}, tag_overrides={"oscar": ["a:b"]})
        assert result.tag_changes == {"oscar": ["a:b"]}

    def test_force(self, bundle_factory):
        assert plan(bundle_factory(), {}, force=True).needs_update

    def test_apply_does_not_mutate_input(self, bundle_factory):
        bundle = bundle_factory()
        result = plan(bundle, {"bigbird": MetricMeta()}, tag_overrides={"elmo": ["a:b"]})

        merged = result.apply(bundle)

        assert [m.name for m in bundle.metrics] == ["elmo"]
        assert bundle.metrics[0].tags == []
        assert [m.name for m in merged.metrics] == ["elmo", "bigbird"]
        assert merged.find_metric("elmo").tags == ["a:b"]


# ============================================================
# RECONCILER TESTS
# ============================================================

class TestCheckReconciler:
    """Tests for CheckReconciler.reconcile."""

    @pytest.mark.asyncio
    async def test_noop_makes_no_calls(self, backend, bundle_factory):
        reconciler = CheckReconciler(backend)

        result = await reconciler.reconcile(bundle_factory(), {"elmo": MetricMeta()})

        assert result is None
        assert backend.call_count() == 0

    @pytest.mark.asyncio
    async def test_new_metric_updates_once(self, backend, bundle_factory):
        reconciler = CheckReconciler(backend)
        snapshot = {"elmo": MetricMeta(), "bigbird": MetricMeta(type="text")}

        first = await reconciler.reconcile(bundle_factory(), snapshot)
        second = await reconciler.reconcile(first.bundle, snapshot)

        assert first.updated
        assert first.bundle.find_metric("bigbird").type == "text"
        assert second is None
        assert backend.call_count("update_check_bundle") == 1
        assert backend.bundles["/check_bundle/1234"].find_metric("bigbird") is not None

    @pytest.mark.asyncio
    async def test_metric_name_not_escaped(self, backend, bundle_factory):
        reconciler = CheckReconciler(backend)

        result = await reconciler.reconcile(bundle_factory(), {"test`metric": MetricMeta()})

        submitted = [arg for op, arg in backend.calls if op == "update_check_bundle"][0]
        assert submitted.find_metric("test`metric") is not None
        assert result.bundle.find_metric("test`metric") is not None

    @pytest.mark.asyncio
    async def test_tag_change(self, backend, bundle_factory):
        reconciler = CheckReconciler(backend)

        result = await reconciler.reconcile(
            bundle_factory(), {}, tag_overrides={"elmo": ["color:red"]}
        )

        assert result.updated
        assert result.bundle.find_metric("elmo").tags == ["color:red"]

    @pytest.mark.asyncio
    async def test_force_without_changes(self, backend, bundle_factory):
        reconciler = CheckReconciler(backend)

        result = await reconciler.reconcile(bundle_factory(), {}, force=True)

        assert result.updated
        assert backend.call_count("update_check_bundle") == 1

    @pytest.mark.asyncio
    async def test_refresh_picks_up_remote_changes(self, backend, bundle_factory):
        backend.bundles["/check_bundle/1234"].metrics.append(CheckBundleMetric(name="bigbird"))
        reconciler = CheckReconciler(backend)

        result = await reconciler.reconcile(bundle_factory(), {"bigbird": MetricMeta()})

        assert not result.updated
        assert result.bundle.find_metric("bigbird") is not None
        assert backend.call_count("get_check_bundle") == 1
        assert backend.call_count("update_check_bundle") == 0

    @pytest.mark.asyncio
    async def test_without_refresh(self, backend, bundle_factory):
        reconciler = CheckReconciler(backend, refresh_before_update=False)

        await reconciler.reconcile(bundle_factory(), {"bigbird": MetricMeta()})

        assert backend.call_count("get_check_bundle") == 0
        assert backend.call_count("update_check_bundle") == 1

    @pytest.mark.asyncio
    async def test_metric_limit_zero_skips_new_metrics(self, backend, bundle_factory):
        backend.bundles["/check_bundle/1234"].metric_limit = 0
        reconciler = CheckReconciler(backend)

        result = await reconciler.reconcile(bundle_factory(), {"bigbird": MetricMeta()})

        assert not result.updated
        assert backend.call_count("update_check_bundle") == 0

    @pytest.mark.asyncio
    async def test_metric_limit_zero_drops_tags_of_skipped_metrics(self, backend, bundle_factory):
        backend.bundles["/check_bundle/1234"].metric_limit = 0
        reconciler = CheckReconciler(backend)

        result = await reconciler.reconcile(
            bundle_factory(),
            {"bigbird": MetricMeta(), "elmo": MetricMeta()},
            {"bigbird": ["color:yellow"], "elmo": ["color:red"]},
        )

        assert result.updated
        assert list(result.plan.tag_changes) == ["elmo"]
        assert result.bundle.find_metric("bigbird") is None

    @pytest.mark.asyncio
    async def test_failed_update_leaves_bundle_untouched(self, backend, bundle_factory):
        backend.fail_on("update_check_bundle", BackendError("boom", status_code=500))
        bundle = bundle_factory()
        reconciler = CheckReconciler(backend)

        with pytest.raises(BackendError):
            await reconciler.reconcile(bundle, {"bigbird": MetricMeta()})

        assert [m.name for m in bundle.metrics] == ["elmo"]
        assert backend.bundles["/check_bundle/1234"].find_metric("bigbird") is None
