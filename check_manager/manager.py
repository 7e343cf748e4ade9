"""
Check Manager - Manager Facade.

============================================================
MAIN ORCHESTRATOR
============================================================

The CheckManager is what the metrics-submission pipeline
talks to:
- Resolves the trap URL once and caches it
- Reconciles collected metric names/tags with the check
- Stays a silent no-op when disabled

============================================================
LIFECYCLE
============================================================

    UNINITIALIZED -> DISABLED                  (terminal)
    UNINITIALIZED -> RESOLVING -> READY
                     RESOLVING -> FAILED -> RESOLVING
    READY -> RESOLVING                         (after reset/expiry)

Calls must be serialized by the caller: resolution and
reconciliation mutate cached state without locking.

============================================================
USAGE
============================================================

```python
manager = CheckManager(CheckManagerConfig.from_env())

trap_url = await manager.ensure_initialized()

# each flush cycle
await manager.reconcile({"requests": MetricMeta()})
```

============================================================
"""

import logging
import threading
from typing import Any, Callable, Mapping, Optional, Sequence

from .backend import ApiClient, CheckBackend
from .broker import Probe, tcp_probe
from .config import CheckManagerConfig, get_config
from .exceptions import BackendError, InvalidTransitionError, ManagerDisabledError
from .models import Broker, CheckBundle, ManagerState, MetricMeta, TrapInfo
from .reconciler import CheckReconciler, inventory, merge_tags
from .resolver import CheckResolver, ResolutionSource
from .secret import make_secret


logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: dict[ManagerState, set[ManagerState]] = {
    ManagerState.UNINITIALIZED: {ManagerState.DISABLED, ManagerState.RESOLVING},
    ManagerState.RESOLVING: {ManagerState.READY, ManagerState.FAILED},
    ManagerState.FAILED: {ManagerState.RESOLVING},
    ManagerState.READY: {ManagerState.RESOLVING},
    ManagerState.DISABLED: set(),
}


class CheckManager:
    """
    Facade over check resolution and reconciliation.

    Args:
        config: Manager configuration (global config if omitted)
        backend: Backend collaborator; an ApiClient is built
            from config.api when enabled and none is given
        probe: Broker reachability probe
        secret_factory: Secret generator for new checks
    """

    def __init__(
        self,
        config: Optional[CheckManagerConfig] = None,
        backend: Optional[CheckBackend] = None,
        probe: Probe = tcp_probe,
        secret_factory: Callable[[], str] = make_secret,
    ) -> None:
        self._config = config or get_config()
        self._config.validate()

        if self._config.debug:
            logging.getLogger(__package__).setLevel(logging.DEBUG)

        self._owns_backend = backend is None and self._config.enabled
        if self._owns_backend:
            backend = ApiClient(self._config.api)
        self._backend = backend

        self._resolver = CheckResolver(self._config, backend, probe, secret_factory)
        self._reconciler = (
            CheckReconciler(backend, self._config.refresh_before_update)
            if backend is not None else None
        )

        self._state = ManagerState.UNINITIALIZED
        self._trap: Optional[TrapInfo] = None
        self._bundle: Optional[CheckBundle] = None
        self._broker: Optional[Broker] = None
        self._ca_cert: Optional[str] = None
        self._last_error: Optional[Exception] = None

        self._force_update = self._config.check.force_update
        self._pending_tags: dict[str, list[str]] = {}
        self._available_metrics: dict[str, bool] = {}

        logger.info(f"CheckManager initialized (enabled={self._config.enabled})")

    # =========================================================
    # STATE
    # =========================================================

    @property
    def state(self) -> ManagerState:
        return self._state

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    @property
    def trap_info(self) -> Optional[TrapInfo]:
        return self._trap

    @property
    def trap_url(self) -> Optional[str]:
        return self._trap.url if self._trap else None

    @property
    def check_bundle(self) -> Optional[CheckBundle]:
        return self._bundle

    @property
    def broker(self) -> Optional[Broker]:
        return self._broker

    @property
    def ca_cert(self) -> Optional[str]:
        return self._ca_cert

    @property
    def last_error(self) -> Optional[Exception]:
        return self._last_error

    def _transition(self, target: ManagerState) -> None:
        if target not in ALLOWED_TRANSITIONS[self._state]:
            raise InvalidTransitionError(self._state.value, target.value)
        logger.debug(f"[manager] {self._state.value} -> {target.value}")
        self._state = target

    # =========================================================
    # INITIALIZATION
    # =========================================================

    async def ensure_initialized(self) -> str:
        """
        Resolve the trap URL once and return it.

        Raises:
            ManagerDisabledError: Disabled without a submission URL
            CheckManagerError: Resolution failed; the next call retries
        """
        if self._trap is not None and self._state in (ManagerState.READY, ManagerState.DISABLED):
            return self._trap.url

        if not self._config.enabled:
            if self._state == ManagerState.UNINITIALIZED:
                self._transition(ManagerState.DISABLED)
            # only a static submission url can succeed here
            try:
                resolution = await self._resolver.resolve()
            except ManagerDisabledError:
                logger.debug("[manager] Disabled, no submission url configured")
                raise
            self._trap = resolution.trap
            return self._trap.url

        self._transition(ManagerState.RESOLVING)
        try:
            resolution = await self._resolver.resolve()
        except Exception as e:
            self._last_error = e
            self._transition(ManagerState.FAILED)
            logger.error(f"[manager] Trap resolution failed: {e}")
            raise

        self._trap = resolution.trap
        self._bundle = resolution.bundle
        self._broker = resolution.broker
        self._available_metrics = inventory(self._bundle)
        self._last_error = None

        if self._trap.is_https and resolution.source != ResolutionSource.SUBMISSION_URL:
            await self._load_ca_cert()

        self._transition(ManagerState.READY)
        logger.info(
            f"[manager] Trap ready via {resolution.source.value}: "
            f"check={self._trap.check_id or '-'} cn={self._trap.cn or '-'}"
        )
        return self._trap.url

    async def _load_ca_cert(self) -> None:
        try:
            self._ca_cert = await self._backend.get_ca_cert()
        except BackendError as e:
            logger.warning(f"[manager] Unable to load broker CA certificate: {e}")

    def reset_trap(self) -> None:
        """Drop the cached trap; the next ensure_initialized resolves again."""
        self._trap = None
        self._ca_cert = None

    async def refresh_trap(self) -> str:
        """Re-resolve the trap when it is older than the max URL age."""
        if (
            self._trap is not None
            and self._config.enabled
            and self._trap.age_seconds() >= self._config.check.max_url_age_seconds
        ):
            logger.info(f"[manager] Trap older than {self._config.check.max_url_age_seconds}s, refreshing")
            self.reset_trap()
        return await self.ensure_initialized()

    # =========================================================
    # RECONCILIATION
    # =========================================================

    async def reconcile(
        self,
        snapshot: Mapping[str, MetricMeta],
        tag_overrides: Optional[Mapping[str, Sequence[str]]] = None,
    ) -> bool:
        """
        Bring the check's metrics and tags in line with a snapshot.

        Returns:
            True when an update was submitted

        Raises:
            BackendError: The refresh or update failed; cached
                state is left as it was
        """
        if not self._config.enabled:
            return False
        if self._state != ManagerState.READY or self._bundle is None or self._reconciler is None:
            logger.debug(f"[manager] Reconcile skipped in state {self._state.value}")
            return False

        overrides = dict(self._pending_tags)
        overrides.update(tag_overrides or {})

        try:
            result = await self._reconciler.reconcile(
                self._bundle, snapshot, overrides, self._force_update
            )
        except BackendError as e:
            logger.error(f"[manager] Updating check bundle failed: {e}")
            raise

        if result is None:
            return False

        self._bundle = result.bundle
        self._available_metrics = inventory(self._bundle)
        self._force_update = False
        # tags of metrics the update skipped stay queued
        for name in list(self._pending_tags):
            metric = self._bundle.find_metric(name)
            if name in result.plan.tag_changes or (metric and metric.tags == self._pending_tags[name]):
                del self._pending_tags[name]
        return result.updated

    def request_update(self) -> None:
        """Force the next reconcile to submit an update."""
        self._force_update = True

    # =========================================================
    # METRIC METADATA
    # =========================================================

    def add_metric_tags(self, name: str, tags: Sequence[str], append: bool = False) -> bool:
        """
        Queue tags for a metric until the next reconcile.

        Tags for metrics that are never emitted are discarded.

        Returns:
            True when the queued tags changed
        """
        current = self._pending_tags.get(name)
        if current is None:
            metric = self._bundle.find_metric(name) if self._bundle else None
            current = list(metric.tags) if metric else []

        updated = merge_tags(current, tags, append)
        if updated is None:
            return False

        self._pending_tags[name] = updated
        logger.debug(f"[manager] {'Added' if append else 'Set'} metric tag(s) {name} {list(tags)}")
        return True

    def is_metric_active(self, name: str) -> bool:
        """Whether the check declares the metric as active."""
        return self._available_metrics.get(name, False)

    def activate_metric(self, name: str) -> bool:
        """Whether the metric should be (re)declared active on the check."""
        if name not in self._available_metrics:
            return True
        return not self._available_metrics[name] and self._config.check.force_metric_activation

    # =========================================================
    # LIFECYCLE
    # =========================================================

    async def close(self) -> None:
        if self._owns_backend and self._backend is not None:
            await self._backend.close()

    async def __aenter__(self) -> "CheckManager":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "state": self._state.value,
            "enabled": self._config.enabled,
            "trap": self._trap.to_dict() if self._trap else None,
            "check_bundle": self._bundle.cid if self._bundle else None,
            "broker": self._broker.cid if self._broker else None,
            "pending_tags": len(self._pending_tags),
            "force_update": self._force_update,
            "last_error": str(self._last_error) if self._last_error else None,
        }


# =============================================================
# GLOBAL MANAGER SINGLETON
# =============================================================


_default_manager: Optional[CheckManager] = None
_manager_lock = threading.Lock()


def get_manager() -> CheckManager:
    """
    Get the global check manager.

    Creates one from the global config if it doesn't exist.
    """
    global _default_manager

    with _manager_lock:
        if _default_manager is None:
            _default_manager = CheckManager()
        return _default_manager


def set_manager(manager: Optional[CheckManager]) -> None:
    """Set (or clear) the global check manager."""
    global _default_manager

    with _manager_lock:
        _default_manager = manager
