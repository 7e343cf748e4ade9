"""
Check Manager - In-Memory Backend.

============================================================
PURPOSE
============================================================
In-memory implementation of CheckBackend for tests and
offline use.

FEATURES:
- Canned checks, bundles and brokers keyed by CID
- Bundle creation assigns CIDs, a check UUID and a
  submission URL on the bound broker
- Call log for asserting which operations ran
- Error injection per operation

============================================================
"""

import copy
import logging
import uuid
from typing import Optional, Union

from .backend import CheckBackend
from .exceptions import BackendError, NotFoundError
from .models import (
    CONFIG_SECRET,
    CONFIG_SUBMISSION_URL,
    Broker,
    BrokerCID,
    BundleCID,
    Check,
    CheckBundle,
    CheckBundleQuery,
    CheckCID,
    cid_to_id,
)


logger = logging.getLogger(__name__)


class InMemoryBackend(CheckBackend):
    """
    Fake monitoring backend.

    Records are deep-copied on the way in and out so callers
    never share state with the store.
    """

    def __init__(
        self,
        checks: Optional[list[Check]] = None,
        bundles: Optional[list[CheckBundle]] = None,
        brokers: Optional[list[Broker]] = None,
        ca_cert: str = "",
        next_id: int = 5000,
    ) -> None:
        self.checks: dict[str, Check] = {c.cid: copy.deepcopy(c) for c in checks or []}
        self.bundles: dict[str, CheckBundle] = {
            b.cid: copy.deepcopy(b) for b in bundles or [] if b.cid
        }
        self.brokers: dict[str, Broker] = {b.cid: copy.deepcopy(b) for b in brokers or []}
        self.ca_cert = ca_cert
        self._next_id = next_id

        # (operation, argument) per call, in order
        self.calls: list[tuple[str, object]] = []

        # Error injection hooks: operation name -> exception
        self._failures: dict[str, Exception] = {}

    # --------------------------------------------------------
    # TEST HOOKS
    # --------------------------------------------------------

    def fail_on(self, operation: str, error: Optional[Exception] = None) -> None:
        """Make every call to an operation raise until cleared."""
        self._failures[operation] = error or BackendError(f"injected failure: {operation}")

    def clear_failures(self) -> None:
        self._failures.clear()

    def call_count(self, operation: Optional[str] = None) -> int:
        if operation is None:
            return len(self.calls)
        return sum(1 for op, _ in self.calls if op == operation)

    def _record(self, operation: str, argument: object = None) -> None:
        self.calls.append((operation, argument))
        error = self._failures.get(operation)
        if error is not None:
            raise error

    # --------------------------------------------------------
    # CHECKS
    # --------------------------------------------------------

    async def get_check(self, check_id: Union[int, CheckCID]) -> Check:
        cid = check_id if isinstance(check_id, str) else f"/check/{int(check_id)}"
        self._record("get_check", cid)
        if cid not in self.checks:
            raise NotFoundError(cid)
        return copy.deepcopy(self.checks[cid])

    # --------------------------------------------------------
    # CHECK BUNDLES
    # --------------------------------------------------------

    async def get_check_bundle(self, cid: BundleCID) -> CheckBundle:
        self._record("get_check_bundle", cid)
        if cid not in self.bundles:
            raise NotFoundError(cid)
        return copy.deepcopy(self.bundles[cid])

    async def search_check_bundles(self, query: CheckBundleQuery) -> list[CheckBundle]:
        self._record("search_check_bundles", query)
        return [copy.deepcopy(b) for b in self.bundles.values() if query.matches(b)]

    async def create_check_bundle(self, bundle: CheckBundle) -> CheckBundle:
        self._record("create_check_bundle", copy.deepcopy(bundle))

        if not bundle.brokers:
            raise BackendError("check bundle has no broker", status_code=400)
        broker_cid = bundle.brokers[0]
        broker = self.brokers.get(broker_cid)
        if broker is None or not broker.details:
            raise BackendError(f"unknown broker {broker_cid}", status_code=400)

        new_id = self._next_id
        self._next_id += 1
        check_uuid = str(uuid.uuid4())
        secret = bundle.config.get(CONFIG_SECRET, "")
        host, port = broker.details[0].address()
        submission_url = f"http://{host}:{port}/module/httptrap/{check_uuid}/{secret}"

        stored = copy.deepcopy(bundle)
        stored.cid = BundleCID(f"/check_bundle/{new_id}")
        stored.checks = [CheckCID(f"/check/{new_id}")]
        stored.check_uuids = [check_uuid]
        stored.config[CONFIG_SUBMISSION_URL] = submission_url
        self.bundles[stored.cid] = stored

        self.checks[stored.checks[0]] = Check(
            cid=stored.checks[0],
            active=True,
            broker_cid=broker_cid,
            bundle_cid=stored.cid,
            check_uuid=check_uuid,
            submission_url=submission_url,
        )

        logger.debug(f"[mock] Created {stored.cid} on {broker_cid}")
        return copy.deepcopy(stored)

    async def update_check_bundle(self, bundle: CheckBundle) -> CheckBundle:
        self._record("update_check_bundle", copy.deepcopy(bundle))
        if not bundle.cid or bundle.cid not in self.bundles:
            raise NotFoundError(bundle.cid or "<no cid>")
        self.bundles[bundle.cid] = copy.deepcopy(bundle)
        return copy.deepcopy(bundle)

    # --------------------------------------------------------
    # BROKERS
    # --------------------------------------------------------

    async def list_brokers(self) -> list[Broker]:
        self._record("list_brokers")
        return [copy.deepcopy(b) for b in self._sorted_brokers()]

    async def search_brokers(self, tag: str) -> list[Broker]:
        self._record("search_brokers", tag)
        return [copy.deepcopy(b) for b in self._sorted_brokers() if tag in b.tags]

    async def get_broker(self, cid: BrokerCID) -> Broker:
        self._record("get_broker", cid)
        if cid not in self.brokers:
            raise NotFoundError(cid)
        return copy.deepcopy(self.brokers[cid])

    async def get_ca_cert(self) -> str:
        self._record("get_ca_cert")
        if not self.ca_cert:
            raise NotFoundError("/pki/ca.crt")
        return self.ca_cert

    def _sorted_brokers(self) -> list[Broker]:
        return sorted(self.brokers.values(), key=lambda b: cid_to_id(b.cid) or 0)
