"""
Broker Selector Tests.

============================================================
PURPOSE
============================================================
Tests for broker filtering, probing and selection.

TEST CATEGORIES:
- Filtering: broker type, detail status, module support
- Selection: latency, enterprise preference, tie-breaks
- Probing: unreachable and slow candidates
- CN mapping: IP hosts mapped to certificate names

Probes are replaced with fakes keyed by host, so no test
touches the network.

============================================================
"""

import asyncio

import pytest

from check_manager import (
    Broker,
    BrokerDetail,
    BrokerSelector,
    NoEligibleBrokerError,
    broker_cn,
    eligible_details,
)


def make_broker(
    cid: str,
    ip: str,
    broker_type: str = "enterprise",
    status: str = "active",
    modules=None,
    name: str = "",
) -> Broker:
    return Broker(
        cid=cid,
        name=name or cid,
        type=broker_type,
        details=[
            BrokerDetail(
                cn=f"{ip}.example.com",
                ip=ip,
                port=43191,
                status=status,
                modules=modules if modules is not None else ["httptrap"],
            )
        ],
    )


def fake_probe(latencies):
    """Probe returning canned latencies; unknown hosts refuse."""
    async def probe(host, port, timeout):
        value = latencies.get(host)
        if value is None:
            raise OSError("connection refused")
        if isinstance(value, BaseException):
            raise value
        return value
    return probe


# ============================================================
# FILTERING TESTS
# ============================================================

class TestEligibility:
    """Tests for eligible_details."""

    def test_active_detail_with_module(self):
        broker = make_broker("/broker/1", "10.0.0.1")
        assert len(eligible_details(broker, "httptrap")) == 1

    def test_inactive_detail_excluded(self):
        broker = make_broker("/broker/1", "10.0.0.1", status="provisioned")
        assert eligible_details(broker, "httptrap") == []

    def test_missing_module_excluded(self):
        broker = make_broker("/broker/1", "10.0.0.1", modules=["json"])
        assert eligible_details(broker, "httptrap") == []

    def test_base_module_matches_subtype(self):
        broker = make_broker("/broker/1", "10.0.0.1", modules=["json"])
        assert len(eligible_details(broker, "json:nad")) == 1

    def test_unknown_broker_type_excluded(self):
        broker = make_broker("/broker/1", "10.0.0.1", broker_type="noit")
        assert eligible_details(broker, "httptrap") == []

    def test_untyped_broker_excluded(self):
        broker = Broker.from_dict({
            "_cid": "/broker/1",
            "_details": [{"ip": "10.0.0.1", "status": "active", "modules": ["httptrap"]}],
        })
        assert broker.type == ""
        assert eligible_details(broker, "httptrap") == []

    def test_candidates_skip_details_without_address(self):
        broker = Broker(
            cid="/broker/1",
            type="enterprise",
            details=[BrokerDetail(cn="x", modules=["httptrap"])],
        )
        selector = BrokerSelector("httptrap", 0.5, probe=fake_probe({}))
        assert selector.candidates([broker]) == []


# ============================================================
# SELECTION TESTS
# ============================================================

class TestSelection:
    """Tests for BrokerSelector.select."""

    @pytest.mark.asyncio
    async def test_lowest_latency_wins(self):
        brokers = [
            make_broker("/broker/1", "10.0.0.1"),
            make_broker("/broker/2", "10.0.0.2"),
        ]
        selector = BrokerSelector(
            "httptrap", 0.5, probe=fake_probe({"10.0.0.1": 0.2, "10.0.0.2": 0.05})
        )

        selection = await selector.select(brokers)

        assert selection.broker.cid == "/broker/2"
        assert selection.latency_seconds == 0.05

    @pytest.mark.asyncio
    async def test_tie_goes_to_first_seen(self):
        brokers = [
            make_broker("/broker/7", "10.0.0.7"),
            make_broker("/broker/3", "10.0.0.3"),
        ]
        selector = BrokerSelector(
            "httptrap", 0.5, probe=fake_probe({"10.0.0.7": 0.1, "10.0.0.3": 0.1})
        )

        selection = await selector.select(brokers)

        assert selection.broker.cid == "/broker/7"

    @pytest.mark.asyncio
    async def test_enterprise_preferred_over_faster_public(self):
        brokers = [
            make_broker("/broker/1", "10.0.0.1", broker_type="circonus"),
            make_broker("/broker/2", "10.0.0.2", broker_type="enterprise"),
        ]
        selector = BrokerSelector(
            "httptrap", 0.5, probe=fake_probe({"10.0.0.1": 0.01, "10.0.0.2": 0.3})
        )

        selection = await selector.select(brokers)

        assert selection.broker.cid == "/broker/2"

    @pytest.mark.asyncio
    async def test_public_broker_used_when_no_enterprise_reachable(self):
        brokers = [
            make_broker("/broker/1", "10.0.0.1", broker_type="circonus"),
            make_broker("/broker/2", "10.0.0.2", broker_type="enterprise"),
        ]
        selector = BrokerSelector("httptrap", 0.5, probe=fake_probe({"10.0.0.1": 0.01}))

        selection = await selector.select(brokers)

        assert selection.broker.cid == "/broker/1"

    @pytest.mark.asyncio
    async def test_unreachable_candidates_tolerated(self):
        brokers = [
            make_broker("/broker/1", "10.0.0.1"),
            make_broker("/broker/2", "10.0.0.2"),
            make_broker("/broker/3", "10.0.0.3"),
        ]
        probe = fake_probe({
            "10.0.0.1": asyncio.TimeoutError(),
            "10.0.0.3": 0.1,
        })
        selector = BrokerSelector("httptrap", 0.5, probe=probe)

        selection = await selector.select(brokers)

        assert selection.broker.cid == "/broker/3"

    @pytest.mark.asyncio
    async def test_probe_error_on_bad_host_name_tolerated(self):
        brokers = [
            make_broker("/broker/1", "10.0.0.1"),
            make_broker("/broker/2", "10.0.0.2"),
        ]
        probe = fake_probe({
            "10.0.0.1": UnicodeError("label too long"),
            "10.0.0.2": 0.1,
        })
        selector = BrokerSelector("httptrap", 0.5, probe=probe)

        selection = await selector.select(brokers)

        assert selection.broker.cid == "/broker/2"

    @pytest.mark.asyncio
    async def test_unencodable_host_with_live_listener(self):
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        bad = Broker(
            cid="/broker/1",
            type="enterprise",
            details=[BrokerDetail(
                cn="bad",
                external_host=("a" * 70) + ".example.com",
                external_port=43191,
                modules=["httptrap"],
            )],
        )
        good = Broker(
            cid="/broker/2",
            type="enterprise",
            details=[BrokerDetail(cn="good", ip="127.0.0.1", port=port, modules=["httptrap"])],
        )
        selector = BrokerSelector("httptrap", 2.0)

        try:
            selection = await selector.select([bad, good])
        finally:
            server.close()
            await server.wait_closed()

        assert selection.broker.cid == "/broker/2"

    @pytest.mark.asyncio
    async def test_slow_candidate_rejected(self):
        brokers = [make_broker("/broker/1", "10.0.0.1")]
        selector = BrokerSelector("httptrap", 0.5, probe=fake_probe({"10.0.0.1": 0.9}))

        with pytest.raises(NoEligibleBrokerError) as exc_info:
            await selector.select(brokers)

        assert "none reachable" in exc_info.value.message
        assert exc_info.value.candidates == 1

    @pytest.mark.asyncio
    async def test_no_brokers(self):
        selector = BrokerSelector("httptrap", 0.5, probe=fake_probe({}))

        with pytest.raises(NoEligibleBrokerError) as exc_info:
            await selector.select([])

        assert exc_info.value.message == "zero brokers found"

    @pytest.mark.asyncio
    async def test_no_eligible_brokers_never_probed(self):
        probed = []

        async def probe(host, port, timeout):
            probed.append(host)
            return 0.01

        brokers = [make_broker("/broker/1", "10.0.0.1", status="inactive")]
        selector = BrokerSelector("httptrap", 0.5, probe=probe)

        with pytest.raises(NoEligibleBrokerError) as exc_info:
            await selector.select(brokers)

        assert "zero are active with module 'httptrap'" in exc_info.value.message
        assert probed == []

    @pytest.mark.asyncio
    async def test_probe_concurrency_is_bounded(self):
        active = 0
        peak = 0

        async def probe(host, port, timeout):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return 0.01

        brokers = [make_broker(f"/broker/{i}", f"10.0.0.{i}") for i in range(1, 9)]
        selector = BrokerSelector("httptrap", 0.5, probe=probe, concurrency=2)

        reachable = await selector.probe_all(selector.candidates(brokers))

        assert len(reachable) == 8
        assert peak <= 2

    @pytest.mark.asyncio
    async def test_probe_receives_detail_address(self):
        seen = []

        async def probe(host, port, timeout):
            seen.append((host, port, timeout))
            return 0.01

        broker = Broker(
            cid="/broker/1",
            type="enterprise",
            details=[
                BrokerDetail(
                    cn="b1",
                    ip="10.0.0.1",
                    external_host="broker.example.com",
                    external_port=8443,
                    port=43191,
                    modules=["httptrap"],
                )
            ],
        )
        selector = BrokerSelector("httptrap", 0.25, probe=probe)

        await selector.select([broker])

        assert seen == [("broker.example.com", 8443, 0.25)]


class TestDesignatedBroker:
    """Tests for BrokerSelector.validate."""

    @pytest.mark.asyncio
    async def test_valid_designated_broker(self):
        broker = make_broker("/broker/1234", "127.0.0.1")
        selector = BrokerSelector("httptrap", 0.5, probe=fake_probe({"127.0.0.1": 0.01}))

        selection = await selector.validate(broker)

        assert selection.broker.cid == "/broker/1234"

    @pytest.mark.asyncio
    async def test_invalid_designated_broker(self):
        broker = make_broker("/broker/1234", "127.0.0.1", modules=["json"])
        selector = BrokerSelector("httptrap", 0.5, probe=fake_probe({"127.0.0.1": 0.01}))

        with pytest.raises(NoEligibleBrokerError) as exc_info:
            await selector.validate(broker)

        assert "designated broker /broker/1234 is invalid" in exc_info.value.message


# ============================================================
# CN MAPPING TESTS
# ============================================================

class TestBrokerCN:
    """Tests for broker_cn."""

    def test_ip_host_maps_to_detail_cn(self):
        broker = Broker(
            cid="/broker/1234",
            details=[BrokerDetail(cn="testbroker.example.com", ip="127.0.0.1", port=43191)],
        )

        cn = broker_cn(broker, "http://127.0.0.1:43191/module/httptrap/abc/blah")

        assert cn == "testbroker.example.com"

    def test_hostname_used_as_is(self):
        broker = Broker(cid="/broker/1", details=[])

        cn = broker_cn(broker, "https://trap.example.com:443/module/httptrap/abc/blah")

        assert cn == "trap.example.com:443"

    def test_unmatched_ip_raises(self):
        broker = Broker(
            cid="/broker/1",
            details=[BrokerDetail(cn="other", ip="10.0.0.9")],
        )

        with pytest.raises(NoEligibleBrokerError):
            broker_cn(broker, "http://127.0.0.1:43191/module/httptrap/abc/blah")
