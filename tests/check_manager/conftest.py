"""
Shared fixtures for check manager tests.

The canned records mirror a small backend account: one
enterprise broker on 127.0.0.1 and one check (id 1234) whose
bundle submits through httptrap on that broker.
"""

import pytest

from check_manager import (
    ApiSettings,
    Broker,
    BrokerDetail,
    BrokerSettings,
    Check,
    CheckBundle,
    CheckBundleMetric,
    CheckManagerConfig,
    CheckSettings,
    InMemoryBackend,
)


CHECK_UUID = "abc123-a1b2-c3d4-e5f6-123abc"
TRAP_URL = f"http://127.0.0.1:43191/module/httptrap/{CHECK_UUID}/blah"


def make_broker() -> Broker:
    return Broker(
        cid="/broker/1234",
        name="test broker",
        type="enterprise",
        details=[
            BrokerDetail(
                cn="testbroker.example.com",
                ip="127.0.0.1",
                port=43191,
                status="active",
                modules=["httptrap"],
            )
        ],
    )


def make_bundle(**overrides) -> CheckBundle:
    values = dict(
        cid="/check_bundle/1234",
        display_name="test_dn",
        target="test",
        type="httptrap",
        brokers=["/broker/1234"],
        metrics=[CheckBundleMetric(name="elmo", type="numeric", status="active")],
        tags=["test:test"],
        config={"submission_url": TRAP_URL, "secret": "blah"},
        check_uuids=[CHECK_UUID],
        checks=["/check/1234"],
    )
    values.update(overrides)
    return CheckBundle(**values)


def make_check() -> Check:
    return Check(
        cid="/check/1234",
        active=True,
        broker_cid="/broker/1234",
        bundle_cid="/check_bundle/1234",
        check_uuid=CHECK_UUID,
        submission_url=TRAP_URL,
    )


@pytest.fixture
def bundle_factory():
    """Factory for variants of the canned check bundle."""
    return make_bundle


@pytest.fixture
def backend():
    """Backend holding check 1234, its httptrap bundle and broker."""
    return InMemoryBackend(
        checks=[make_check()],
        bundles=[make_bundle()],
        brokers=[make_broker()],
    )


@pytest.fixture
def make_config():
    """Factory for enabled configs with a fixed identity."""
    def factory(enabled=True, broker=None, **check):
        settings = dict(instance_id="test-host:test-app")
        settings.update(check)
        return CheckManagerConfig(
            api=ApiSettings(token="foo", app_name="bar"),
            check=CheckSettings(**settings),
            broker=broker or BrokerSettings(),
            enabled=enabled,
        )
    return factory


@pytest.fixture
def probe():
    """Probe that reports every broker as reachable in 10ms."""
    async def fake(host, port, timeout):
        return 0.01
    return fake
