"""
Check Manager Module.

============================================================
CHECK LIFECYCLE FOR METRIC SUBMISSION
============================================================

This module finds or provisions the check that a metrics
pipeline submits to, and keeps the metric and tag
declarations of that check in line with what the pipeline
actually emits.

CORE PHILOSOPHY:
- Resolve once, cache the trap URL
- Touch the backend only when something changed
- A disabled manager is a silent no-op

============================================================
COMPONENTS
============================================================

1. BrokerSelector  - Filters and latency-probes brokers
2. make_secret     - Random hex secret for new checks
3. CheckResolver   - URL / id / search / create resolution
4. CheckReconciler - Metric and tag updates to the bundle
5. CheckManager    - Stateful facade over all of the above

============================================================
USAGE
============================================================

```python
from check_manager import (
    CheckManager,
    CheckManagerConfig,
    MetricMeta,
)

config = CheckManagerConfig.from_env()

async with CheckManager(config) as manager:
    trap_url = await manager.ensure_initialized()

    # after each flush
    manager.add_metric_tags("requests", ["method:get"])
    await manager.reconcile({"requests": MetricMeta()})
```

============================================================
"""

from .models import (
    CheckCID,
    BundleCID,
    BrokerCID,
    cid_to_id,
    ManagerState,
    Check,
    CheckBundle,
    CheckBundleMetric,
    CheckBundleQuery,
    Broker,
    BrokerDetail,
    MetricMeta,
    TrapInfo,
)
from .config import (
    CheckManagerConfig,
    ApiSettings,
    CheckSettings,
    BrokerSettings,
    get_config,
    set_config,
)
from .exceptions import (
    CheckManagerError,
    ManagerDisabledError,
    NoEligibleBrokerError,
    BackendError,
    NotFoundError,
    RandomSourceError,
    TrapURLError,
    ConfigurationError,
    InvalidTransitionError,
)
from .backend import CheckBackend, ApiClient, mask_value
from .mock import InMemoryBackend
from .secret import make_secret
from .broker import (
    BrokerSelector,
    BrokerSelection,
    tcp_probe,
    eligible_details,
    broker_cn,
)
from .resolver import CheckResolver, Resolution, ResolutionSource, derive_trap_url
from .reconciler import CheckReconciler, ReconcilePlan, ReconcileResult, plan
from .manager import CheckManager, get_manager, set_manager


__all__ = [
    # Models
    "CheckCID",
    "BundleCID",
    "BrokerCID",
    "cid_to_id",
    "ManagerState",
    "Check",
    "CheckBundle",
    "CheckBundleMetric",
    "CheckBundleQuery",
    "Broker",
    "BrokerDetail",
    "MetricMeta",
    "TrapInfo",
    # Config
    "CheckManagerConfig",
    "ApiSettings",
    "CheckSettings",
    "BrokerSettings",
    "get_config",
    "set_config",
    # Exceptions
    "CheckManagerError",
    "ManagerDisabledError",
    "NoEligibleBrokerError",
    "BackendError",
    "NotFoundError",
    "RandomSourceError",
    "TrapURLError",
    "ConfigurationError",
    "InvalidTransitionError",
    # Backend
    "CheckBackend",
    "ApiClient",
    "InMemoryBackend",
    "mask_value",
    # Core
    "make_secret",
    "BrokerSelector",
    "BrokerSelection",
    "tcp_probe",
    "eligible_details",
    "broker_cn",
    "CheckResolver",
    "Resolution",
    "ResolutionSource",
    "derive_trap_url",
    "CheckReconciler",
    "ReconcilePlan",
    "ReconcileResult",
    "plan",
    "CheckManager",
    "get_manager",
    "set_manager",
]
