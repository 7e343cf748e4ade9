"""
Check Manager - Backend Interface.

============================================================
PURPOSE
============================================================
The monitoring backend is consumed through a small set of
remote operations. CheckBackend is the abstract interface;
ApiClient implements it over HTTP with aiohttp, and
check_manager.mock.InMemoryBackend implements it in memory.

ERROR CONTRACT:
- Missing record      -> NotFoundError
- Any other failure   -> BackendError
- No retries here; callers own the retry policy

============================================================
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, TypeVar, Union

import aiohttp

from .config import ApiSettings
from .exceptions import BackendError, NotFoundError
from .models import (
    Broker,
    BrokerCID,
    BundleCID,
    Check,
    CheckBundle,
    CheckBundleQuery,
    CheckCID,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")


def mask_value(value: str, show_chars: int = 4) -> str:
    """Mask a credential, showing only the first few chars."""
    if not value or len(value) <= show_chars:
        return "***"
    return f"{value[:show_chars]}...***"


# =============================================================
# INTERFACE
# =============================================================


class CheckBackend(ABC):
    """
    Remote operations on checks, check bundles and brokers.

    Implementations are assumed authenticated. Every method may
    raise BackendError; lookups raise NotFoundError on a miss.
    """

    @abstractmethod
    async def get_check(self, check_id: Union[int, CheckCID]) -> Check:
        """Fetch a check by numeric id or CID."""

    @abstractmethod
    async def get_check_bundle(self, cid: BundleCID) -> CheckBundle:
        """Fetch a check bundle by CID."""

    @abstractmethod
    async def search_check_bundles(self, query: CheckBundleQuery) -> list[CheckBundle]:
        """Search check bundles; an empty list means no match."""

    @abstractmethod
    async def create_check_bundle(self, bundle: CheckBundle) -> CheckBundle:
        """Create a check bundle and return the stored record."""

    @abstractmethod
    async def update_check_bundle(self, bundle: CheckBundle) -> CheckBundle:
        """Replace a check bundle and return the stored record."""

    @abstractmethod
    async def list_brokers(self) -> list[Broker]:
        """List all brokers visible to the account."""

    @abstractmethod
    async def search_brokers(self, tag: str) -> list[Broker]:
        """List brokers carrying a tag."""

    @abstractmethod
    async def get_broker(self, cid: BrokerCID) -> Broker:
        """Fetch a broker by CID."""

    @abstractmethod
    async def get_ca_cert(self) -> str:
        """Fetch the PEM CA certificate brokers are signed with."""

    async def close(self) -> None:
        """Release resources."""


# =============================================================
# HTTP CLIENT
# =============================================================


class ApiClient(CheckBackend):
    """
    aiohttp implementation of CheckBackend.

    Usage:
        async with ApiClient(ApiSettings(token="...")) as api:
            bundle = await api.get_check_bundle("/check_bundle/1234")
    """

    def __init__(
        self,
        settings: ApiSettings,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._settings = settings
        self._base_url = settings.url.rstrip("/")
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._settings.timeout_seconds),
                headers=self._get_default_headers(),
            )
            self._owns_session = True
        return self._session

    def _get_default_headers(self) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "X-Circonus-Auth-Token": self._settings.token,
            "X-Circonus-App-Name": self._settings.app_name,
            "User-Agent": "check-manager/1.0",
        }

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, str]] = None,
        body: Optional[dict[str, Any]] = None,
    ) -> Any:
        """Make an API request and return the decoded JSON payload."""
        session = await self._get_session()
        url = f"{self._base_url}{path}"

        logger.debug(
            f"[api] {method} {url} params={params} "
            f"token={mask_value(self._settings.token)}"
        )

        start_time = time.monotonic()
        try:
            async with session.request(method, url, params=params, json=body) as response:
                latency_ms = (time.monotonic() - start_time) * 1000

                if response.status == 404:
                    raise NotFoundError(path, request_url=url)

                if response.status >= 400:
                    text = await response.text()
                    raise BackendError(
                        f"HTTP {response.status} {method} {path}",
                        status_code=response.status,
                        request_url=url,
                        response_body=text[:1000],
                    )

                try:
                    data = await response.json(content_type=None)
                except ValueError as e:
                    raise BackendError(
                        f"invalid JSON from {method} {path}: {e}",
                        status_code=response.status,
                        request_url=url,
                        original_error=e,
                    )

                logger.debug(f"[api] {method} {path} completed in {latency_ms:.1f}ms")
                return data

        except aiohttp.ClientError as e:
            raise BackendError(
                f"connection error: {e}",
                request_url=url,
                original_error=e,
            )
        except asyncio.TimeoutError as e:
            raise BackendError(
                f"timeout after {self._settings.timeout_seconds}s: {method} {path}",
                request_url=url,
                original_error=e,
            )

    @staticmethod
    def _decode(factory: Callable[[dict[str, Any]], T], payload: Any, path: str) -> T:
        if not isinstance(payload, dict):
            raise BackendError(f"unexpected response shape from {path}")
        try:
            return factory(payload)
        except (KeyError, TypeError, ValueError) as e:
            raise BackendError(f"unable to decode response from {path}: {e}", original_error=e)

    def _decode_list(
        self,
        factory: Callable[[dict[str, Any]], T],
        payload: Any,
        path: str,
    ) -> list[T]:
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise BackendError(f"expected a list from {path}")
        return [self._decode(factory, item, path) for item in payload]

    # =========================================================
    # CHECKS
    # =========================================================

    async def get_check(self, check_id: Union[int, CheckCID]) -> Check:
        path = check_id if isinstance(check_id, str) else f"/check/{int(check_id)}"
        payload = await self._request("GET", path)
        return self._decode(Check.from_dict, payload, path)

    # =========================================================
    # CHECK BUNDLES
    # =========================================================

    async def get_check_bundle(self, cid: BundleCID) -> CheckBundle:
        payload = await self._request("GET", cid)
        return self._decode(CheckBundle.from_dict, payload, cid)

    async def search_check_bundles(self, query: CheckBundleQuery) -> list[CheckBundle]:
        params = {"search": query.search_string(), **query.filters()}
        payload = await self._request("GET", "/check_bundle", params=params)
        return self._decode_list(CheckBundle.from_dict, payload, "/check_bundle")

    async def create_check_bundle(self, bundle: CheckBundle) -> CheckBundle:
        payload = await self._request("POST", "/check_bundle", body=bundle.to_dict())
        return self._decode(CheckBundle.from_dict, payload, "/check_bundle")

    async def update_check_bundle(self, bundle: CheckBundle) -> CheckBundle:
        if not bundle.cid:
            raise BackendError("cannot update a check bundle without a CID")
        payload = await self._request("PUT", bundle.cid, body=bundle.to_dict())
        return self._decode(CheckBundle.from_dict, payload, bundle.cid)

    # =========================================================
    # BROKERS
    # =========================================================

    async def list_brokers(self) -> list[Broker]:
        payload = await self._request("GET", "/broker")
        return self._decode_list(Broker.from_dict, payload, "/broker")

    async def search_brokers(self, tag: str) -> list[Broker]:
        payload = await self._request("GET", "/broker", params={"f__tags_has": tag})
        return self._decode_list(Broker.from_dict, payload, "/broker")

    async def get_broker(self, cid: BrokerCID) -> Broker:
        payload = await self._request("GET", cid)
        return self._decode(Broker.from_dict, payload, cid)

    async def get_ca_cert(self) -> str:
        payload = await self._request("GET", "/pki/ca.crt")
        if not isinstance(payload, dict) or not payload.get("contents"):
            raise BackendError("CA certificate response has no contents")
        return payload["contents"]

    # =========================================================
    # LIFECYCLE
    # =========================================================

    async def close(self) -> None:
        """Close the HTTP session if we own it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"<ApiClient(url={self._base_url})>"
