"""
Check Manager - Check Resolver.

============================================================
RESOLUTION ORDER
============================================================

First applicable branch wins:

1. Disabled without a submission URL -> ManagerDisabledError
2. Explicit submission URL           -> used as-is, no network
3. Numeric check id                  -> check -> bundle -> broker
4. Search (target, type, tags, name) -> first active match
5. Create                            -> broker selection,
                                        secret, new bundle

A lookup miss (NotFoundError) falls through to the next
branch. Any other backend failure aborts the resolution; no
retries happen here.

============================================================
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional
from urllib.parse import urlsplit

from .backend import CheckBackend
from .broker import BrokerSelector, Probe, broker_cn, eligible_details, tcp_probe
from .config import CheckManagerConfig
from .exceptions import (
    BackendError,
    ConfigurationError,
    ManagerDisabledError,
    NoEligibleBrokerError,
    NotFoundError,
    TrapURLError,
)
from .models import (
    CHECK_TYPE_HTTPTRAP,
    CONFIG_ASYNC_METRICS,
    CONFIG_REVERSE_SECRET,
    CONFIG_SECRET,
    CONFIG_SUBMISSION_URL,
    STATUS_ACTIVE,
    Broker,
    BrokerCID,
    CheckBundle,
    CheckBundleQuery,
    TrapInfo,
)
from .secret import make_secret


logger = logging.getLogger(__name__)


_TRAP_PATH = re.compile(r"/module/httptrap/(?P<uuid>[^/]+)/(?P<secret>[^/]+)/?$")


class ResolutionSource(str, Enum):
    """Which branch produced the trap."""
    SUBMISSION_URL = "submission_url"
    CHECK_ID = "check_id"
    SEARCH = "search"
    CREATE = "create"


@dataclass
class Resolution:
    """Outcome of one successful resolution."""
    trap: TrapInfo
    source: ResolutionSource
    bundle: Optional[CheckBundle] = None
    broker: Optional[Broker] = None


# =============================================================
# TRAP URL DERIVATION
# =============================================================


def trap_from_submission_url(url: str) -> TrapInfo:
    """Static trap; uuid and secret are filled in when the path embeds them."""
    match = _TRAP_PATH.search(urlsplit(url).path)
    if match is None:
        return TrapInfo(url=url)
    return TrapInfo(url=url, check_id=match.group("uuid"), secret=match.group("secret"))


def derive_trap_url(bundle: CheckBundle) -> tuple[str, str]:
    """
    Build the submission URL and secret of a bundle.

    httptrap bundles carry the URL in their config. Other check
    types are reached through the broker's reverse connection
    URL rewritten to the httptrap module.

    Raises:
        TrapURLError: If the bundle lacks the needed fields
    """
    if bundle.type == CHECK_TYPE_HTTPTRAP:
        url = bundle.config.get(CONFIG_SUBMISSION_URL)
        if not url:
            raise TrapURLError("check bundle has no submission_url", bundle.cid)
        secret = bundle.config.get(CONFIG_SECRET) or trap_from_submission_url(url).secret
        return url, secret

    if not bundle.reverse_connect_urls:
        raise TrapURLError("check bundle has no reverse connection urls", bundle.cid)
    secret = bundle.config.get(CONFIG_REVERSE_SECRET)
    if not secret:
        raise TrapURLError("check bundle has no reverse secret", bundle.cid)

    # mtev_reverse://host:port/check/<uuid> -> https://host:port/module/httptrap/<uuid>
    reverse_url = bundle.reverse_connect_urls[0]
    rest = reverse_url.split("://", 1)[-1]
    rest = rest.replace("/check/", "/module/httptrap/", 1)
    return f"https://{rest}/{secret}", secret


# =============================================================
# RESOLVER
# =============================================================


class CheckResolver:
    """
    Finds or provisions the check for the configured target.

    Usage:
        resolver = CheckResolver(config, backend)
        resolution = await resolver.resolve()
        trap_url = resolution.trap.url
    """

    def __init__(
        self,
        config: CheckManagerConfig,
        backend: Optional[CheckBackend],
        probe: Probe = tcp_probe,
        secret_factory: Callable[[], str] = make_secret,
    ) -> None:
        self._config = config
        self._backend = backend
        self._secret_factory = secret_factory
        self._selector = BrokerSelector(
            module=config.check.type,
            max_response_time=config.broker.max_response_time_seconds,
            probe=probe,
            concurrency=config.broker.probe_concurrency,
        )

    @property
    def backend(self) -> CheckBackend:
        if self._backend is None:
            raise ConfigurationError("check manager is enabled but has no backend")
        return self._backend

    async def resolve(self) -> Resolution:
        """
        Run the resolution procedure once.

        Raises:
            ManagerDisabledError: Disabled and no submission URL
            NoEligibleBrokerError: Creation found no usable broker
            BackendError: A backend call failed
            TrapURLError: The bundle cannot yield a URL
            RandomSourceError: Secret generation failed
        """
        check = self._config.check

        if not self._config.enabled and not check.submission_url:
            raise ManagerDisabledError()

        if check.submission_url:
            logger.debug("[resolver] Using configured submission url")
            return Resolution(
                trap=trap_from_submission_url(check.submission_url),
                source=ResolutionSource.SUBMISSION_URL,
            )

        if check.id > 0:
            resolution = await self._resolve_by_id(check.id)
            if resolution is not None:
                return resolution

        resolution = await self._resolve_by_search()
        if resolution is not None:
            return resolution

        return await self._create()

    # =========================================================
    # LOOKUP
    # =========================================================

    async def _resolve_by_id(self, check_id: int) -> Optional[Resolution]:
        try:
            found = await self.backend.get_check(check_id)
        except NotFoundError:
            logger.warning(f"[resolver] Check {check_id} not found, falling back to search")
            return None

        if not found.active:
            raise BackendError(f"check {found.cid} is not active")
        if not found.bundle_cid:
            raise BackendError(f"check {found.cid} has no check bundle")

        try:
            bundle = await self.backend.get_check_bundle(found.bundle_cid)
            logger.info(f"[resolver] Check {found.cid} -> {bundle.cid}")
            return await self._from_bundle(bundle, ResolutionSource.CHECK_ID)
        except NotFoundError as e:
            logger.warning(f"[resolver] Check {found.cid} lookup incomplete ({e}), falling back to search")
            return None

    def _queries(self) -> list[CheckBundleQuery]:
        check = self._config.check
        with_notes = CheckBundleQuery(
            check_type=check.type,
            target=check.target,
            display_name=check.display_name,
            search_tags=list(check.search_tags),
            notes=check.notes,
        )
        without_notes = CheckBundleQuery(
            check_type=check.type,
            target=check.target,
            display_name=check.display_name,
            search_tags=list(check.search_tags),
        )
        return [with_notes, without_notes]

    async def _resolve_by_search(self) -> Optional[Resolution]:
        for query in self._queries():
            try:
                bundles = await self.backend.search_check_bundles(query)
            except NotFoundError:
                logger.debug("[resolver] Check bundle search unsupported")
                return None

            active = [b for b in bundles if b.is_active]
            if not active:
                continue

            # lowest numeric id wins when several bundles match
            active.sort(key=lambda b: (b.bundle_id is None, b.bundle_id or 0))
            if len(active) > 1:
                logger.warning(
                    f"[resolver] {len(active)} check bundles match {query.search_string()}, "
                    f"using {active[0].cid}"
                )
            try:
                return await self._from_bundle(active[0], ResolutionSource.SEARCH)
            except NotFoundError as e:
                logger.warning(f"[resolver] Broker of {active[0].cid} not found ({e}), creating a new check")
                return None

        logger.info("[resolver] No existing check bundle found")
        return None

    async def _from_bundle(
        self,
        bundle: CheckBundle,
        source: ResolutionSource,
        broker: Optional[Broker] = None,
    ) -> Resolution:
        if broker is None:
            if not bundle.brokers:
                raise TrapURLError("check bundle has no broker", bundle.cid)
            broker = await self.backend.get_broker(bundle.brokers[0])
            if not eligible_details(broker, self._config.check.type):
                raise NoEligibleBrokerError(
                    f"broker {broker.cid} has no active detail with module "
                    f"'{self._config.check.type}'",
                    module=self._config.check.type,
                )

        url, secret = derive_trap_url(bundle)
        trap = TrapInfo(
            url=url,
            check_id=bundle.check_uuids[0] if bundle.check_uuids else "",
            secret=secret,
            cn=broker_cn(broker, url),
        )
        return Resolution(trap=trap, source=source, bundle=bundle, broker=broker)

    # =========================================================
    # CREATION
    # =========================================================

    async def _choose_broker(self) -> Broker:
        settings = self._config.broker

        if settings.id > 0:
            designated = await self.backend.get_broker(BrokerCID(f"/broker/{settings.id}"))
            return (await self._selector.validate(designated)).broker

        if settings.select_tag:
            brokers = await self.backend.search_brokers(settings.select_tag)
        else:
            brokers = await self.backend.list_brokers()

        return (await self._selector.select(brokers)).broker

    def _new_bundle(self, broker: Broker, secret: str) -> CheckBundle:
        check = self._config.check

        tags: list[str] = []
        for tag in list(check.search_tags) + list(check.tags):
            if tag not in tags:
                tags.append(tag)

        config = dict(check.custom_config)
        if not config.get(CONFIG_ASYNC_METRICS):
            config[CONFIG_ASYNC_METRICS] = "true"
        if not config.get(CONFIG_SECRET):
            config[CONFIG_SECRET] = secret

        return CheckBundle(
            display_name=check.display_name,
            target=check.target,
            type=check.type,
            brokers=[broker.cid],
            metrics=[],
            tags=tags,
            config=config,
            period=60,
            timeout=10,
            status=STATUS_ACTIVE,
            notes=check.notes,
        )

    async def _create(self) -> Resolution:
        broker = await self._choose_broker()
        secret = self._config.check.secret or self._secret_factory()

        created = await self.backend.create_check_bundle(self._new_bundle(broker, secret))
        logger.info(f"[resolver] Created check bundle {created.cid} on {broker.cid}")
        return await self._from_bundle(created, ResolutionSource.CREATE, broker=broker)
