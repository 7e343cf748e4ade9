"""
Check Manager - Broker Selector.

============================================================
SELECTION RULES
============================================================

A broker detail is a candidate only if:
1. The broker type is "circonus" or "enterprise"
2. The detail status is "active"
3. The detail supports the required module (full check
   type, or its base type before ":")

Each candidate is probed with a TCP connect bounded by the
max response time. Probes run concurrently through a
bounded semaphore. Failed or slow probes disqualify only
their own candidate.

Among reachable candidates, enterprise brokers win over
public ones; then the lowest latency wins; ties go to the
first-seen candidate.

============================================================
"""

import asyncio
import ipaddress
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional
from urllib.parse import urlsplit

from .exceptions import NoEligibleBrokerError
from .models import (
    BROKER_TYPE_CIRCONUS,
    BROKER_TYPE_ENTERPRISE,
    Broker,
    BrokerDetail,
)


logger = logging.getLogger(__name__)


# (host, port, timeout seconds) -> elapsed seconds; raises on failure
Probe = Callable[[str, int, float], Awaitable[float]]

VALID_BROKER_TYPES = (BROKER_TYPE_CIRCONUS, BROKER_TYPE_ENTERPRISE)


async def tcp_probe(host: str, port: int, timeout: float) -> float:
    """
    Measure how long a TCP connect to host:port takes.

    Raises:
        OSError: Connection refused or unreachable
        asyncio.TimeoutError: No connection within timeout
        ValueError: Host name cannot be encoded
    """
    start = time.monotonic()
    _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    elapsed = time.monotonic() - start
    writer.close()
    try:
        await writer.wait_closed()
    except OSError as e:
        logger.debug(f"[broker] Close after probe of {host}:{port} failed: {e}")
    return elapsed


# =============================================================
# FILTERING
# =============================================================


def supports_module(detail: BrokerDetail, module: str) -> bool:
    """Check a detail for the module, falling back to the base type."""
    if module in detail.modules:
        return True
    base, sep, _ = module.partition(":")
    return bool(sep) and base in detail.modules


def eligible_details(broker: Broker, module: str) -> list[BrokerDetail]:
    """Details of a broker that are active and support the module."""
    if broker.type not in VALID_BROKER_TYPES:
        return []
    return [d for d in broker.details if d.is_active and supports_module(d, module)]


def broker_cn(broker: Broker, url: str) -> str:
    """
    Common name to expect on the broker's TLS certificate.

    Brokers are often addressed by IP while their certificates
    carry a host name, so an IP host is mapped to the CN of the
    matching detail.
    """
    parts = urlsplit(url)
    host = parts.hostname or ""
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return parts.netloc

    for detail in broker.details:
        if detail.ip == host:
            return detail.cn

    raise NoEligibleBrokerError(f"unable to match url host ({parts.netloc}) to broker {broker.cid}")


# =============================================================
# CANDIDATES
# =============================================================


@dataclass(frozen=True)
class BrokerCandidate:
    """One probe-able broker detail."""
    broker: Broker
    detail: BrokerDetail
    order: int

    @property
    def address(self) -> tuple[str, int]:
        return self.detail.address()

    @property
    def is_enterprise(self) -> bool:
        return self.broker.type == BROKER_TYPE_ENTERPRISE


@dataclass(frozen=True)
class BrokerSelection:
    """Winning candidate and its measured latency."""
    broker: Broker
    detail: BrokerDetail
    latency_seconds: float


# =============================================================
# SELECTOR
# =============================================================


class BrokerSelector:
    """
    Picks the fastest eligible broker for a module.

    Usage:
        selector = BrokerSelector("httptrap", max_response_time=0.5)
        selection = await selector.select(brokers)
    """

    def __init__(
        self,
        module: str,
        max_response_time: float,
        probe: Probe = tcp_probe,
        concurrency: int = 4,
    ) -> None:
        self.module = module
        self.max_response_time = max_response_time
        self._probe = probe
        self._concurrency = max(1, concurrency)

    def candidates(self, brokers: list[Broker]) -> list[BrokerCandidate]:
        """Flatten brokers into eligible details, in first-seen order."""
        result = []
        for broker in brokers:
            for detail in eligible_details(broker, self.module):
                if not detail.address()[0]:
                    logger.debug(f"[broker] {broker.cid} detail has no address, skipped")
                    continue
                result.append(BrokerCandidate(broker, detail, len(result)))
        return result

    async def _measure(
        self,
        candidate: BrokerCandidate,
        semaphore: asyncio.Semaphore,
    ) -> Optional[float]:
        host, port = candidate.address
        async with semaphore:
            try:
                latency = await self._probe(host, port, self.max_response_time)
            except Exception as e:
                # bad host names raise UnicodeError/ValueError, not OSError
                logger.warning(
                    f"[broker] '{candidate.broker.name}' ({host}:{port}) unreachable: "
                    f"{e or type(e).__name__}"
                )
                return None

        if latency > self.max_response_time:
            logger.warning(
                f"[broker] '{candidate.broker.name}' ({host}:{port}) too slow: "
                f"{latency * 1000:.1f}ms > {self.max_response_time * 1000:.1f}ms"
            )
            return None

        logger.debug(f"[broker] '{candidate.broker.name}' ({host}:{port}) {latency * 1000:.1f}ms")
        return latency

    async def probe_all(
        self,
        candidates: list[BrokerCandidate],
    ) -> list[tuple[BrokerCandidate, float]]:
        """Probe candidates concurrently, keeping reachable ones."""
        semaphore = asyncio.Semaphore(self._concurrency)
        latencies = await asyncio.gather(*(self._measure(c, semaphore) for c in candidates))
        return [(c, lat) for c, lat in zip(candidates, latencies) if lat is not None]

    async def select(self, brokers: list[Broker]) -> BrokerSelection:
        """
        Select the best broker.

        Raises:
            NoEligibleBrokerError: If no candidate qualifies
        """
        if not brokers:
            raise NoEligibleBrokerError("zero brokers found", module=self.module)

        candidates = self.candidates(brokers)
        if not candidates:
            raise NoEligibleBrokerError(
                f"found {len(brokers)} broker(s), zero are active with module '{self.module}'",
                module=self.module,
            )

        reachable = await self.probe_all(candidates)
        if not reachable:
            raise NoEligibleBrokerError(
                f"found {len(candidates)} eligible broker detail(s), "
                f"none reachable within {self.max_response_time}s",
                module=self.module,
                candidates=len(candidates),
            )

        if any(c.is_enterprise for c, _ in reachable):
            reachable = [(c, lat) for c, lat in reachable if c.is_enterprise]

        winner, latency = min(reachable, key=lambda item: (item[1], item[0].order))
        logger.info(
            f"[broker] Selected {winner.broker.cid} '{winner.broker.name}' "
            f"({latency * 1000:.1f}ms, {len(reachable)} reachable)"
        )
        return BrokerSelection(winner.broker, winner.detail, latency)

    async def validate(self, broker: Broker) -> BrokerSelection:
        """
        Validate a designated broker with the same rules.

        Raises:
            NoEligibleBrokerError: If the broker does not qualify
        """
        try:
            return await self.select([broker])
        except NoEligibleBrokerError as e:
            raise NoEligibleBrokerError(
                f"designated broker {broker.cid} is invalid "
                f"(not active, does not support '{self.module}', or unreachable): {e.message}",
                module=self.module,
                candidates=e.candidates,
            ) from e
