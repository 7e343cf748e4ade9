"""
Check Manager - Check Reconciler.

============================================================
DECISION RULE
============================================================

An update is pushed only when at least one holds:
- the snapshot has metrics the bundle does not declare
- a declared metric's type or status differs from the snapshot
- a metric's requested tag set differs from its bundle tags
- the force flag is set

Otherwise reconciliation is a no-op with no network traffic.

Metric names are opaque: they are compared and submitted
verbatim, never normalized or escaped.

============================================================
"""

import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence

from .backend import CheckBackend
from .models import CheckBundle, CheckBundleMetric, MetricMeta, STATUS_ACTIVE


logger = logging.getLogger(__name__)


# =============================================================
# TAG HELPERS
# =============================================================


def merge_tags(
    current: Sequence[str],
    tags: Sequence[str],
    append: bool,
) -> Optional[list[str]]:
    """
    Combine requested tags with a metric's current tags.

    Appending adds tags not yet present; setting replaces the
    tags when the sets differ.

    Returns:
        The new tag list, or None when nothing changes
    """
    if append:
        new = [t for t in tags if t not in current]
        if not new:
            return None
        return list(current) + list(dict.fromkeys(new))

    if set(tags) == set(current) and len(tags) == len(current):
        return None
    return list(tags)


def inventory(bundle: Optional[CheckBundle]) -> dict[str, bool]:
    """Map metric name -> whether the metric is active."""
    if bundle is None:
        return {}
    return {m.name: m.status == STATUS_ACTIVE for m in bundle.metrics}


# =============================================================
# PLAN
# =============================================================


@dataclass
class ReconcilePlan:
    """What a reconciliation would change."""
    new_metrics: dict[str, MetricMeta] = field(default_factory=dict)
    changed_metrics: dict[str, MetricMeta] = field(default_factory=dict)
    tag_changes: dict[str, list[str]] = field(default_factory=dict)
    force: bool = False

    @property
    def needs_update(self) -> bool:
        return bool(self.force or self.new_metrics or self.changed_metrics or self.tag_changes)

    def apply(self, bundle: CheckBundle) -> CheckBundle:
        """Return a merged working copy; the input is not touched."""
        merged = bundle.copy()

        for metric in merged.metrics:
            meta = self.changed_metrics.get(metric.name)
            if meta is not None:
                metric.type = meta.type
                metric.status = meta.status

        for name, meta in self.new_metrics.items():
            merged.metrics.append(CheckBundleMetric(name=name, type=meta.type, status=meta.status))

        for metric in merged.metrics:
            tags = self.tag_changes.get(metric.name)
            if tags is not None:
                metric.tags = list(tags)

        return merged

    def to_dict(self) -> dict:
        return {
            "new_metrics": sorted(self.new_metrics),
            "changed_metrics": sorted(self.changed_metrics),
            "tag_changes": sorted(self.tag_changes),
            "force": self.force,
        }


def plan(
    bundle: CheckBundle,
    snapshot: Mapping[str, MetricMeta],
    tag_overrides: Optional[Mapping[str, Sequence[str]]] = None,
    force: bool = False,
) -> ReconcilePlan:
    """Compare a snapshot and requested tags against a bundle."""
    result = ReconcilePlan(force=force)
    declared = {m.name: m for m in bundle.metrics}

    for name, meta in snapshot.items():
        existing = declared.get(name)
        if existing is None:
            result.new_metrics[name] = meta
        elif existing.type != meta.type or existing.status != meta.status:
            result.changed_metrics[name] = meta

    for name, tags in (tag_overrides or {}).items():
        existing = declared.get(name)
        if existing is None:
            # tags do not create metrics
            if name not in result.new_metrics:
                continue
            current: list[str] = []
        else:
            current = existing.tags
        if merge_tags(current, tags, append=False) is not None:
            result.tag_changes[name] = list(tags)

    return result


@dataclass
class ReconcileResult:
    """Bundle to cache after a reconciliation that touched the backend."""
    bundle: CheckBundle
    updated: bool
    plan: ReconcilePlan


# =============================================================
# RECONCILER
# =============================================================


class CheckReconciler:
    """
    Pushes metric and tag changes to a check bundle.

    The reconciler never mutates the bundle it is given. On
    success it returns the bundle the backend stored; on
    failure BackendError propagates and the caller keeps its
    cached copy.
    """

    def __init__(
        self,
        backend: CheckBackend,
        refresh_before_update: bool = True,
    ) -> None:
        self._backend = backend
        self._refresh = refresh_before_update

    async def reconcile(
        self,
        bundle: CheckBundle,
        snapshot: Mapping[str, MetricMeta],
        tag_overrides: Optional[Mapping[str, Sequence[str]]] = None,
        force: bool = False,
    ) -> Optional[ReconcileResult]:
        """
        Reconcile once.

        Returns:
            None when nothing was needed (no network traffic),
            otherwise the bundle to cache and whether an update
            was submitted

        Raises:
            BackendError: If the refresh or the update fails
        """
        pending = plan(bundle, snapshot, tag_overrides, force)
        if not pending.needs_update:
            return None

        current = bundle
        if self._refresh and bundle.cid:
            # pick up changes made by other clients before merging
            current = await self._backend.get_check_bundle(bundle.cid)
            pending = plan(current, snapshot, tag_overrides, force)
            if not pending.needs_update:
                logger.debug(f"[reconciler] {current.cid} already up to date")
                return ReconcileResult(current, updated=False, plan=pending)

        if current.metric_limit == 0 and pending.new_metrics:
            logger.warning(
                f"[reconciler] {current.cid} has a metric limit of 0, "
                f"skipping {len(pending.new_metrics)} new metric(s)"
            )
            pending.new_metrics.clear()
            declared = {m.name for m in current.metrics}
            pending.tag_changes = {n: t for n, t in pending.tag_changes.items() if n in declared}
            if not pending.needs_update:
                return ReconcileResult(current, updated=False, plan=pending)

        merged = pending.apply(current)
        logger.info(f"[reconciler] Updating {current.cid}: {pending.to_dict()}")
        stored = await self._backend.update_check_bundle(merged)
        return ReconcileResult(stored, updated=True, plan=pending)
