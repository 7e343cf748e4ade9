"""
Check Manager - Data Models.

============================================================
CORE DATA STRUCTURES
============================================================

Records exchanged with the monitoring backend:
- Check: a backend-tracked endpoint receiving submissions
- CheckBundle: the editable definition behind a check
- CheckBundleMetric: one declared metric of a bundle
- Broker / BrokerDetail: ingestion relays and their endpoints

Local structures:
- MetricMeta: declared type/status of a collected metric
- CheckBundleQuery: search criteria for existing bundles
- TrapInfo: resolved submission endpoint
- ManagerState: lifecycle state of the manager

All backend records parse from and serialize to the backend
JSON shape. Keys prefixed with "_" are read-only on the
backend side.

============================================================
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, NewType, Optional


# =============================================================
# TYPED IDENTIFIERS
# =============================================================

CheckCID = NewType("CheckCID", str)
BundleCID = NewType("BundleCID", str)
BrokerCID = NewType("BrokerCID", str)


def cid_to_id(cid: str) -> Optional[int]:
    """Extract the numeric id from a CID like '/check_bundle/1234'."""
    if not cid:
        return None
    tail = cid.rstrip("/").rsplit("/", 1)[-1]
    try:
        return int(tail)
    except ValueError:
        return None


# =============================================================
# CONSTANTS
# =============================================================

STATUS_ACTIVE = "active"
STATUS_AVAILABLE = "available"

METRIC_TYPE_NUMERIC = "numeric"
METRIC_TYPE_TEXT = "text"
METRIC_TYPE_HISTOGRAM = "histogram"

CHECK_TYPE_HTTPTRAP = "httptrap"

BROKER_TYPE_CIRCONUS = "circonus"
BROKER_TYPE_ENTERPRISE = "enterprise"

# Bundle config keys
CONFIG_SUBMISSION_URL = "submission_url"
CONFIG_REVERSE_SECRET = "reverse:secret_key"
CONFIG_SECRET = "secret"
CONFIG_ASYNC_METRICS = "async_metrics"

DEFAULT_BROKER_PORT = 43191


# =============================================================
# ENUMS
# =============================================================


class ManagerState(str, Enum):
    """
    Lifecycle state of a check manager.

    - UNINITIALIZED: nothing resolved yet
    - DISABLED: no-op mode, never touches the network
    - RESOLVING: trap resolution in progress
    - READY: trap URL resolved and cached
    - FAILED: last resolution failed, next call retries
    """
    UNINITIALIZED = "uninitialized"
    DISABLED = "disabled"
    RESOLVING = "resolving"
    READY = "ready"
    FAILED = "failed"


# =============================================================
# CHECK
# =============================================================


@dataclass
class Check:
    """A check as returned by the backend."""
    cid: CheckCID
    active: bool = True
    broker_cid: Optional[BrokerCID] = None
    bundle_cid: Optional[BundleCID] = None
    check_uuid: str = ""
    submission_url: str = ""

    @property
    def check_id(self) -> Optional[int]:
        return cid_to_id(self.cid)

    def to_dict(self) -> dict[str, Any]:
        return {
            "_cid": self.cid,
            "_active": self.active,
            "_broker": self.broker_cid,
            "_check_bundle": self.bundle_cid,
            "_check_uuid": self.check_uuid,
            "_details": {"submission_url": self.submission_url},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Check":
        details = data.get("_details") or {}
        return cls(
            cid=CheckCID(data["_cid"]),
            active=bool(data.get("_active", True)),
            broker_cid=data.get("_broker"),
            bundle_cid=data.get("_check_bundle"),
            check_uuid=data.get("_check_uuid", ""),
            submission_url=details.get("submission_url", ""),
        )


# =============================================================
# CHECK BUNDLE
# =============================================================


@dataclass
class CheckBundleMetric:
    """One metric declared on a check bundle. Names are opaque."""
    name: str
    type: str = METRIC_TYPE_NUMERIC
    status: str = STATUS_ACTIVE
    tags: list[str] = field(default_factory=list)
    units: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "status": self.status,
            "tags": list(self.tags),
            "units": self.units,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CheckBundleMetric":
        return cls(
            name=data["name"],
            type=data.get("type", METRIC_TYPE_NUMERIC),
            status=data.get("status", STATUS_ACTIVE),
            tags=list(data.get("tags") or []),
            units=data.get("units"),
        )


@dataclass
class CheckBundle:
    """
    The editable configuration of a check.

    Owned by the backend. Callers keep a cached copy and only
    mutate deep copies before submitting updates.
    """
    display_name: str
    target: str
    type: str = CHECK_TYPE_HTTPTRAP
    cid: Optional[BundleCID] = None
    brokers: list[BrokerCID] = field(default_factory=list)
    metrics: list[CheckBundleMetric] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    config: dict[str, str] = field(default_factory=dict)
    period: int = 60
    timeout: int = 10
    status: str = STATUS_ACTIVE
    notes: Optional[str] = None
    metric_limit: Optional[int] = None
    reverse_connect_urls: list[str] = field(default_factory=list)
    check_uuids: list[str] = field(default_factory=list)
    checks: list[CheckCID] = field(default_factory=list)

    @property
    def bundle_id(self) -> Optional[int]:
        return cid_to_id(self.cid or "")

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE

    def find_metric(self, name: str) -> Optional[CheckBundleMetric]:
        for metric in self.metrics:
            if metric.name == name:
                return metric
        return None

    def copy(self) -> "CheckBundle":
        """Deep working copy for local mutation."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "brokers": list(self.brokers),
            "config": dict(self.config),
            "display_name": self.display_name,
            "metrics": [m.to_dict() for m in self.metrics],
            "metric_limit": self.metric_limit,
            "notes": self.notes,
            "period": self.period,
            "status": self.status,
            "tags": list(self.tags),
            "target": self.target,
            "timeout": self.timeout,
            "type": self.type,
        }
        if self.cid:
            data["_cid"] = self.cid
            data["_checks"] = list(self.checks)
            data["_check_uuids"] = list(self.check_uuids)
            data["_reverse_connection_urls"] = list(self.reverse_connect_urls)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CheckBundle":
        return cls(
            cid=data.get("_cid"),
            display_name=data.get("display_name", ""),
            target=data.get("target", ""),
            type=data.get("type", CHECK_TYPE_HTTPTRAP),
            brokers=list(data.get("brokers") or []),
            metrics=[CheckBundleMetric.from_dict(m) for m in data.get("metrics") or []],
            tags=list(data.get("tags") or []),
            config={k: str(v) for k, v in (data.get("config") or {}).items()},
            period=int(data.get("period", 60)),
            timeout=int(data.get("timeout", 10)),
            status=data.get("status", STATUS_ACTIVE),
            notes=data.get("notes"),
            metric_limit=data.get("metric_limit"),
            reverse_connect_urls=list(data.get("_reverse_connection_urls") or []),
            check_uuids=list(data.get("_check_uuids") or []),
            checks=list(data.get("_checks") or []),
        )


@dataclass
class CheckBundleQuery:
    """Search criteria for locating an existing check bundle."""
    check_type: str
    target: str
    display_name: Optional[str] = None
    search_tags: list[str] = field(default_factory=list)
    notes: Optional[str] = None

    def search_string(self) -> str:
        """Backend search expression (notes and display name go as filters)."""
        return (
            f'(active:1)(type:"{self.check_type}")(host:"{self.target}")'
            f'(tags:{",".join(self.search_tags)})'
        )

    def filters(self) -> dict[str, str]:
        params = {}
        if self.notes:
            params["f_notes"] = self.notes
        if self.display_name:
            params["f_display_name"] = self.display_name
        return params

    def matches(self, bundle: CheckBundle) -> bool:
        """Local evaluation of the query, used by in-memory backends."""
        if not bundle.is_active:
            return False
        if bundle.type != self.check_type or bundle.target != self.target:
            return False
        if self.display_name and bundle.display_name != self.display_name:
            return False
        if self.notes and bundle.notes != self.notes:
            return False
        return all(tag in bundle.tags for tag in self.search_tags)


# =============================================================
# BROKER
# =============================================================


@dataclass
class BrokerDetail:
    """One network location of a broker."""
    cn: str = ""
    ip: Optional[str] = None
    external_host: Optional[str] = None
    external_port: int = 0
    port: int = 0
    status: str = STATUS_ACTIVE
    modules: list[str] = field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE

    def address(self) -> tuple[str, int]:
        """Probe address: external endpoint first, then internal."""
        host = self.external_host or self.ip or ""
        if self.external_port:
            port = self.external_port
        elif self.port:
            port = self.port
        else:
            port = DEFAULT_BROKER_PORT
        # public trap brokers only listen on 443
        if host == "trap.noit.circonus.net":
            port = 443
        return host, port

    def to_dict(self) -> dict[str, Any]:
        return {
            "cn": self.cn,
            "ip": self.ip,
            "external_host": self.external_host,
            "external_port": self.external_port,
            "port": self.port,
            "status": self.status,
            "modules": list(self.modules),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BrokerDetail":
        return cls(
            cn=data.get("cn", ""),
            ip=data.get("ip"),
            external_host=data.get("external_host") or None,
            external_port=int(data.get("external_port") or 0),
            port=int(data.get("port") or 0),
            status=data.get("status", STATUS_ACTIVE),
            modules=list(data.get("modules") or []),
        )


@dataclass
class Broker:
    """A named ingestion endpoint with one or more details."""
    cid: BrokerCID
    name: str = ""
    type: str = ""
    details: list[BrokerDetail] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "_cid": self.cid,
            "_name": self.name,
            "_type": self.type,
            "_details": [d.to_dict() for d in self.details],
            "_tags": list(self.tags),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Broker":
        return cls(
            cid=BrokerCID(data["_cid"]),
            name=data.get("_name", ""),
            type=data.get("_type") or "",
            details=[BrokerDetail.from_dict(d) for d in data.get("_details") or []],
            tags=list(data.get("_tags") or []),
        )


# =============================================================
# LOCAL STRUCTURES
# =============================================================


@dataclass(frozen=True)
class MetricMeta:
    """Declared type and status of a metric seen by the collector."""
    type: str = METRIC_TYPE_NUMERIC
    status: str = STATUS_ACTIVE


@dataclass
class TrapInfo:
    """
    Resolved submission endpoint.

    check_id and secret are empty when they cannot be derived
    (e.g. a static submission URL of an unknown shape).
    """
    url: str
    check_id: str = ""
    secret: str = ""
    cn: str = ""
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_https(self) -> bool:
        return self.url.lower().startswith("https://")

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.utcnow()
        return (now - self.created_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "check_id": self.check_id,
            "cn": self.cn,
            "created_at": self.created_at.isoformat(),
        }
