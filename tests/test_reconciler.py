"""Tests for resource reconciliation against a discovered IP set."""

from __future__ import annotations

import pytest
from cloudflare_mock import MockCloudflare, MockCloudflareState
from conftest import LOCATION_ID, TUNNEL_ID, ZONE_ID

from tunnel_sync.aggregate import TunnelSyncError
from tunnel_sync.models import DnsRecord, GatewayLocation, SpectrumApp, TunnelConfig, dump_patch
from tunnel_sync.reconciler import (
    DnsSyncError,
    LocationNotFoundError,
    LocationSyncError,
    SpectrumSyncError,
    TunnelReconciler,
    build_app_update,
    build_location_update,
    build_record_batch,
    rewrite_origin_direct,
    sorted_ips,
)

OTHER_ZONE_ID = "9a7806061c88ada191ed06f989cc3dac"


def _tunnel(**sections: object) -> TunnelConfig:
    return TunnelConfig.model_validate({"tunnel_id": TUNNEL_ID, **sections})


def _ssh_app(app_id: str = "app-ssh", **overrides: object) -> dict[str, object]:
    app: dict[str, object] = {
        "id": app_id,
        "protocol": "tcp/22",
        "dns": {"type": "CNAME", "name": "ssh.example.com"},
        "origin_direct": ["tcp://10.0.0.1:22"],
        "tls": "off",
    }
    app.update(overrides)
    return app


class TestPatchBuilders:
    """Tests for the pure patch builders."""

    def test_sorted_ips_is_numeric(self) -> None:
        assert sorted_ips({"192.0.2.10", "192.0.2.9", "10.0.0.1"}) == [
            "10.0.0.1",
            "192.0.2.9",
            "192.0.2.10",
        ]

    def test_location_update_passes_through_present_fields(self) -> None:
        """Test that only attributes the location had are sent back."""
        location = GatewayLocation.model_validate(
            {
                "id": LOCATION_ID,
                "name": "Office",
                "client_default": False,
                "endpoints": {"doh": {"enabled": True}},
                "networks": [{"network": "10.0.0.1/32"}],
            }
        )

        patch = dump_patch(build_location_update(location, ["192.0.2.1", "192.0.2.2"]))

        assert patch == {
            "name": "Office",
            "client_default": False,
            "endpoints": {"doh": {"enabled": True}},
            "networks": [{"network": "192.0.2.1/32"}, {"network": "192.0.2.2/32"}],
        }

    def test_record_batch_for_new_name(self) -> None:
        """Test that a name without records gets automatic ttl and no deletes."""
        patch = dump_patch(build_record_batch("vpn.example.com", [], ["192.0.2.1"]))

        assert patch == {
            "posts": [{"name": "vpn.example.com", "type": "A", "content": "192.0.2.1", "ttl": 1}]
        }

    def test_record_batch_copies_first_record(self) -> None:
        """Test that metadata of the first existing record is carried over."""
        existing = [
            DnsRecord(
                id="r1",
                ttl=120,
                proxied=True,
                comment="managed",
                tags=["team:net"],
                settings={"ipv4_only": True},
            ),
            DnsRecord(id="r2", ttl=600, comment="ignored"),
        ]

        patch = dump_patch(build_record_batch("vpn.example.com", existing, ["192.0.2.1"]))

        assert patch["deletes"] == [{"id": "r1"}, {"id": "r2"}]
        assert patch["posts"] == [
            {
                "name": "vpn.example.com",
                "type": "A",
                "content": "192.0.2.1",
                "ttl": 120,
                "proxied": True,
                "comment": "managed",
                "settings": {"ipv4_only": True},
                "tags": ["team:net"],
            }
        ]

    def test_record_batch_skips_falsy_metadata(self) -> None:
        """Test that an unproxied, uncommented record adds nothing extra."""
        existing = [DnsRecord(id="r1", ttl=300, proxied=False, comment="")]

        patch = dump_patch(build_record_batch("vpn.example.com", existing, ["192.0.2.1"]))

        assert patch["posts"] == [
            {"name": "vpn.example.com", "type": "A", "content": "192.0.2.1", "ttl": 300}
        ]

    @pytest.mark.parametrize(
        ("origin", "expected"),
        [
            ("tcp://10.0.0.1:22", "tcp://192.0.2.1:22"),
            ("tcp://origin.internal:8443/path?x=1", "tcp://192.0.2.1:8443/path?x=1"),
            ("udp://user@10.0.0.1:53", "udp://user@192.0.2.1:53"),
            ("tcp://[2001:db8::1]:22", "tcp://192.0.2.1:22"),
            ("tcp://10.0.0.1", "tcp://192.0.2.1"),
        ],
    )
    def test_rewrite_origin_keeps_shape(self, origin: str, expected: str) -> None:
        assert rewrite_origin_direct([origin, "tcp://ignored:1"], ["192.0.2.1"]) == [expected]

    def test_rewrite_origin_one_per_ip(self) -> None:
        assert rewrite_origin_direct(["tcp://10.0.0.1:22"], ["192.0.2.1", "192.0.2.2"]) == [
            "tcp://192.0.2.1:22",
            "tcp://192.0.2.2:22",
        ]

    def test_rewrite_origin_requires_template(self) -> None:
        with pytest.raises(ValueError):
            rewrite_origin_direct([], ["192.0.2.1"])
        with pytest.raises(ValueError):
            rewrite_origin_direct(["10.0.0.1:22"], ["192.0.2.1"])

    def test_app_update_without_origin_direct(self) -> None:
        """Test that apps using origin_dns are updated without origin_direct."""
        app = SpectrumApp.model_validate(
            {
                "id": "a1",
                "protocol": "tcp/443",
                "dns": {"name": "web.example.com"},
                "origin_dns": {"name": "origin.example.com"},
                "origin_port": 443,
            }
        )

        patch = dump_patch(build_app_update(app, ["192.0.2.1"]))

        assert patch == {
            "dns": {"name": "web.example.com"},
            "protocol": "tcp/443",
            "origin_dns": {"name": "origin.example.com"},
            "origin_port": 443,
        }


class TestLocationReconciliation:
    """Tests for gateway location updates."""

    @pytest.mark.asyncio
    async def test_networks_replaced_wholesale(self) -> None:
        """Test that stale networks are dropped and every IP is listed."""
        state = MockCloudflareState(
            locations={
                LOCATION_ID: {
                    "id": LOCATION_ID,
                    "name": "Office",
                    "ecs_support": True,
                    "networks": [{"network": "10.0.0.1/32"}, {"network": "10.0.0.2/32"}],
                }
            }
        )
        cf = MockCloudflare(state)

        await TunnelReconciler(
            cf, _tunnel(zt_locations=[LOCATION_ID]), {"192.0.2.10", "192.0.2.9"}
        ).reconcile()

        [call] = cf.calls_to("update_location")
        assert call.payload == {
            "name": "Office",
            "ecs_support": True,
            "networks": [{"network": "192.0.2.9/32"}, {"network": "192.0.2.10/32"}],
        }
        assert state.locations[LOCATION_ID]["networks"] == call.payload["networks"]

    @pytest.mark.asyncio
    async def test_missing_location(self, cf: MockCloudflare) -> None:
        """Test that an unknown location fails without an update attempt."""
        with pytest.raises(TunnelSyncError) as exc_info:
            await TunnelReconciler(cf, _tunnel(zt_locations=[LOCATION_ID]), {"192.0.2.1"}).reconcile()

        [error] = exc_info.value.errors
        assert isinstance(error, LocationNotFoundError)
        assert error.location_id == LOCATION_ID
        assert cf.mutating_calls == []

    @pytest.mark.asyncio
    async def test_location_without_name(self, cf_state: MockCloudflareState) -> None:
        """Test that a nameless location fails instead of sending a null name."""
        other_location_id = "1c2d3e4f5a6b4c7d8e9fa0b1c2d3e4f6"
        cf_state.locations[LOCATION_ID] = {"id": LOCATION_ID, "networks": []}
        cf_state.locations[other_location_id] = {"id": other_location_id, "name": "Branch"}
        cf = MockCloudflare(cf_state)
        tunnel = _tunnel(zt_locations=[LOCATION_ID, other_location_id])

        with pytest.raises(TunnelSyncError) as exc_info:
            await TunnelReconciler(cf, tunnel, {"192.0.2.1"}).reconcile()

        [error] = exc_info.value.errors
        assert isinstance(error, LocationSyncError)
        assert not isinstance(error, LocationNotFoundError)
        assert error.location_id == LOCATION_ID
        assert "has no name" in str(error)
        assert [c.args for c in cf.calls_to("update_location")] == [(other_location_id,)]


class TestDnsReconciliation:
    """Tests for DNS record replacement."""

    @pytest.mark.asyncio
    async def test_replaces_existing_record(self, cf_state: MockCloudflareState) -> None:
        """Test deleting the old record and posting the new address in one batch."""
        record_id = cf_state.add_record(
            ZONE_ID, name="vpn.example.com", type="A", content="10.0.0.1", ttl=300
        )
        cf = MockCloudflare(cf_state)
        tunnel = _tunnel(dns_records=[{"zone_id": ZONE_ID, "record_name": ["vpn.example.com"]}])

        settled = await TunnelReconciler(cf, tunnel, {"1.2.3.4"}).reconcile()

        [call] = cf.calls_to("batch_records")
        assert call.args == (ZONE_ID,)
        assert call.payload == {
            "deletes": [{"id": record_id}],
            "posts": [{"name": "vpn.example.com", "type": "A", "content": "1.2.3.4", "ttl": 300}],
        }
        assert settled.successes == [f"dns {ZONE_ID}/vpn.example.com"]

    @pytest.mark.asyncio
    async def test_repeat_run_converges(self, cf_state: MockCloudflareState) -> None:
        """Test that a second run leaves the same record set."""
        cf_state.add_record(ZONE_ID, name="vpn.example.com", type="A", content="10.0.0.1", ttl=60)
        cf_state.add_record(ZONE_ID, name="vpn.example.com", type="A", content="10.0.0.2", ttl=60)
        cf = MockCloudflare(cf_state)
        tunnel = _tunnel(dns_records=[{"zone_id": ZONE_ID, "record_name": ["vpn.example.com"]}])
        ips = {"192.0.2.1", "192.0.2.2"}

        await TunnelReconciler(cf, tunnel, ips).reconcile()
        first = sorted(
            (r["content"], r["ttl"]) for r in cf_state.records_named(ZONE_ID, "vpn.example.com")
        )
        await TunnelReconciler(cf, tunnel, ips).reconcile()
        second = sorted(
            (r["content"], r["ttl"]) for r in cf_state.records_named(ZONE_ID, "vpn.example.com")
        )

        assert first == second == [("192.0.2.1", 60), ("192.0.2.2", 60)]

    @pytest.mark.asyncio
    async def test_other_records_untouched(self, cf_state: MockCloudflareState) -> None:
        """Test that records of other names and types survive."""
        cf_state.add_record(ZONE_ID, name="vpn.example.com", type="AAAA", content="2001:db8::1")
        cf_state.add_record(ZONE_ID, name="www.example.com", type="A", content="10.0.0.9")
        cf = MockCloudflare(cf_state)
        tunnel = _tunnel(dns_records=[{"zone_id": ZONE_ID, "record_name": ["vpn.example.com"]}])

        await TunnelReconciler(cf, tunnel, {"192.0.2.1"}).reconcile()

        contents = sorted(r["content"] for r in cf_state.records[ZONE_ID].values())
        assert contents == ["10.0.0.9", "192.0.2.1", "2001:db8::1"]

    @pytest.mark.asyncio
    async def test_failed_name_does_not_stop_others(self, cf: MockCloudflare) -> None:
        """Test that one failing record name leaves the others applied."""
        cf.fail("batch_records", f"{ZONE_ID}/bad.example.com")
        tunnel = _tunnel(
            dns_records=[
                {"zone_id": ZONE_ID, "record_name": ["bad.example.com", "good.example.com"]},
                {"zone_id": OTHER_ZONE_ID, "record_name": ["good.example.org"]},
            ]
        )

        with pytest.raises(TunnelSyncError) as exc_info:
            await TunnelReconciler(cf, tunnel, {"192.0.2.1"}).reconcile()

        [error] = exc_info.value.errors
        assert isinstance(error, DnsSyncError)
        assert (error.zone_id, error.record_name) == (ZONE_ID, "bad.example.com")
        assert cf.state.records_named(ZONE_ID, "good.example.com")
        assert cf.state.records_named(OTHER_ZONE_ID, "good.example.org")


class TestSpectrumReconciliation:
    """Tests for Spectrum origin rewrites."""

    @pytest.mark.asyncio
    async def test_rewrites_matching_apps_only(self, cf_state: MockCloudflareState) -> None:
        """Test that only apps bound to declared names are updated."""
        cf_state.apps[ZONE_ID] = {
            "app-ssh": _ssh_app(),
            "app-web": _ssh_app("app-web", dns={"type": "CNAME", "name": "web.example.com"}),
        }
        cf = MockCloudflare(cf_state)
        tunnel = _tunnel(
            dns_records=[{"zone_id": ZONE_ID, "spectrum_record_name": ["ssh.example.com"]}]
        )

        await TunnelReconciler(cf, tunnel, {"192.0.2.2", "192.0.2.1"}).reconcile()

        [call] = cf.calls_to("update_app")
        assert call.args == (ZONE_ID, "app-ssh")
        assert call.payload == {
            "dns": {"type": "CNAME", "name": "ssh.example.com"},
            "protocol": "tcp/22",
            "origin_direct": ["tcp://192.0.2.1:22", "tcp://192.0.2.2:22"],
            "tls": "off",
        }
        assert cf_state.apps[ZONE_ID]["app-web"]["origin_direct"] == ["tcp://10.0.0.1:22"]

    @pytest.mark.asyncio
    async def test_apps_fetched_once_per_zone(self, cf_state: MockCloudflareState) -> None:
        """Test that repeated zone entries share one listing."""
        cf_state.apps[ZONE_ID] = {
            "app-ssh": _ssh_app(),
            "app-git": _ssh_app("app-git", dns={"name": "git.example.com"}),
        }
        cf = MockCloudflare(cf_state)
        tunnel = _tunnel(
            dns_records=[
                {"zone_id": ZONE_ID, "spectrum_record_name": ["ssh.example.com"]},
                {"zone_id": ZONE_ID, "spectrum_record_name": ["git.example.com"]},
            ]
        )

        await TunnelReconciler(cf, tunnel, {"192.0.2.1"}).reconcile()

        assert len(cf.calls_to("list_apps")) == 1
        assert sorted(c.args[1] for c in cf.calls_to("update_app")) == ["app-git", "app-ssh"]

    @pytest.mark.asyncio
    async def test_empty_origin_direct_fails_that_app(self, cf_state: MockCloudflareState) -> None:
        """Test that an app with nothing to copy fails alone."""
        cf_state.apps[ZONE_ID] = {
            "app-ssh": _ssh_app(),
            "app-empty": _ssh_app("app-empty", origin_direct=[]),
        }
        cf = MockCloudflare(cf_state)
        tunnel = _tunnel(
            dns_records=[{"zone_id": ZONE_ID, "spectrum_record_name": ["ssh.example.com"]}]
        )

        with pytest.raises(TunnelSyncError) as exc_info:
            await TunnelReconciler(cf, tunnel, {"192.0.2.1"}).reconcile()

        [error] = exc_info.value.errors
        assert isinstance(error, SpectrumSyncError)
        assert error.app_id == "app-empty"
        assert [c.args[1] for c in cf.calls_to("update_app")] == ["app-ssh"]

    @pytest.mark.asyncio
    async def test_failed_listing_skips_zone(self, cf_state: MockCloudflareState) -> None:
        """Test that a zone whose apps cannot be listed fails once, others proceed."""
        cf_state.apps[OTHER_ZONE_ID] = {"app-ssh": _ssh_app()}
        cf_state.add_record(ZONE_ID, name="vpn.example.com", type="A", content="10.0.0.1")
        cf = MockCloudflare(cf_state)
        cf.fail("list_apps", ZONE_ID)
        tunnel = _tunnel(
            dns_records=[
                {
                    "zone_id": ZONE_ID,
                    "record_name": ["vpn.example.com"],
                    "spectrum_record_name": ["ssh.example.com"],
                },
                {"zone_id": OTHER_ZONE_ID, "spectrum_record_name": ["ssh.example.com"]},
            ]
        )

        with pytest.raises(TunnelSyncError) as exc_info:
            await TunnelReconciler(cf, tunnel, {"192.0.2.1"}).reconcile()

        [error] = exc_info.value.errors
        assert isinstance(error, SpectrumSyncError)
        assert error.zone_id == ZONE_ID
        assert [c.args for c in cf.calls_to("update_app")] == [(OTHER_ZONE_ID, "app-ssh")]
        assert len(cf.calls_to("batch_records")) == 1

    @pytest.mark.asyncio
    async def test_failed_listing_reported_once_for_repeated_zone(
        self, cf: MockCloudflare
    ) -> None:
        """Test that a zone named by several entries yields one listing and one failure."""
        cf.fail("list_apps", ZONE_ID)
        tunnel = _tunnel(
            dns_records=[
                {"zone_id": ZONE_ID, "spectrum_record_name": ["ssh.example.com"]},
                {"zone_id": ZONE_ID, "spectrum_record_name": ["git.example.com"]},
            ]
        )

        with pytest.raises(TunnelSyncError) as exc_info:
            await TunnelReconciler(cf, tunnel, {"192.0.2.1"}).reconcile()

        [error] = exc_info.value.errors
        assert isinstance(error, SpectrumSyncError)
        assert error.zone_id == ZONE_ID
        assert error.app_id is None
        assert len(cf.calls_to("list_apps")) == 1
        assert cf.mutating_calls == []


class TestTunnelReconciler:
    """Tests for combining the sub-reconcilers."""

    def test_only_declared_sections_run(self) -> None:
        tunnel = _tunnel(dns_records=[{"zone_id": ZONE_ID, "record_name": ["vpn.example.com"]}])

        subs = TunnelReconciler(MockCloudflare(), tunnel, {"192.0.2.1"}).sub_reconcilers()

        assert [type(s).__name__ for s in subs] == ["DnsReconciler"]

    @pytest.mark.asyncio
    async def test_all_sections_together(self, cf_state: MockCloudflareState) -> None:
        """Test that every section is applied and each update is reported."""
        cf_state.locations[LOCATION_ID] = {"id": LOCATION_ID, "name": "Office", "networks": []}
        cf_state.apps[ZONE_ID] = {"app-ssh": _ssh_app()}
        cf = MockCloudflare(cf_state)
        tunnel = _tunnel(
            zt_locations=[LOCATION_ID],
            dns_records=[
                {
                    "zone_id": ZONE_ID,
                    "record_name": ["vpn.example.com"],
                    "spectrum_record_name": ["ssh.example.com"],
                }
            ],
        )

        settled = await TunnelReconciler(cf, tunnel, {"192.0.2.1"}).reconcile()

        assert sorted(settled.successes) == [
            f"dns {ZONE_ID}/vpn.example.com",
            f"location {LOCATION_ID}",
            f"spectrum {ZONE_ID}/app-ssh",
        ]
