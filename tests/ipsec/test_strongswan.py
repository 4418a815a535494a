# tests/ipsec/test_strongswan.py
"""
Unit Tests for the strongSwan backend
swanctl is never executed: StrongSwanManager._run is patched
"""

import asyncio
import base64
import os
import stat
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from ipsec_manager.errors import BackendError, ConfigRejected, TunnelNotFound, UnsupportedPlatform
from ipsec_manager.ipsec.config_builder import SwanctlConfigBuilder
from ipsec_manager.ipsec.factory import new_manager
from ipsec_manager.ipsec.memory import MemoryTunnelManager
from ipsec_manager.ipsec.models import AuthMethod, CryptoSuite, TrafficSelector
from ipsec_manager.ipsec.states import TunnelState
from ipsec_manager.ipsec.strongswan import StrongSwanManager, parse_list_sas

LIST_SAS_OUTPUT = """\
site-a: #3, ESTABLISHED, IKEv2, 1d2a3b4c5d6e7f80_i* 0a1b2c3d4e5f6071_r
  local  'gw-1' @ 192.0.2.1[4500]
  remote 'gw-2' @ 198.51.100.1[4500]
  AES_CBC-256/HMAC_SHA2_256_128/PRF_HMAC_SHA2_256/MODP_2048
  established 120s ago, rekeying in 3000s
  site-a-child: #7, reqid 1, INSTALLED, TUNNEL, ESP:AES_CBC-256/HMAC_SHA2_256_128
    installed 60s ago, rekeying in 3000s, expires in 3500s
    in  c1a2b3c4,   4096 bytes,    32 packets,     5s ago
    out c5d6e7f8,   2048 bytes,    16 packets,     5s ago
    local  10.1.0.0/24
    remote 10.2.0.0/24
"""


def run(coro):
    return asyncio.run(coro)


class TestConfigBuilder:
    """Tests for SwanctlConfigBuilder.build_config"""

    @pytest.fixture
    def builder(self):
        return SwanctlConfigBuilder()

    def test_psk_tunnel(self, builder, make_tunnel):
        content = builder.build_config(make_tunnel("site-a"))

        assert content.startswith("connections {\n    site-a {\n")
        assert "        version = 2\n" in content
        assert "        proposals = aes256-sha256-modp2048\n" in content
        assert "        rekey_time = 3240s\n" in content
        assert "            auth = psk\n" in content
        assert "        site-a-child {\n" in content
        assert "                mode = tunnel\n" in content
        assert "                local_ts = 10.1.0.0/24\n" in content
        assert "                remote_ts = 10.2.0.0/24\n" in content
        assert "                esp_proposals = aes256-sha256-modp2048\n" in content
        assert "                life_time = 3600s\n" in content
        assert "                start_action = start\n" in content
        assert "ah_proposals" not in content
        assert f"secret = 0s{base64.b64encode(b's3cret-psk-value').decode()}\n" in content
        assert "s3cret-psk-value" not in content

    def test_secret_cannot_break_out_of_its_value(self, builder, make_tunnel):
        secret = 'abc"def}\nconnections { evil {'
        content = builder.build_config(make_tunnel("site-a", auth=AuthMethod(type="psk", secret=secret)))

        assert content.count("connections {") == 1
        line = next(row for row in content.splitlines() if row.strip().startswith("secret = "))
        encoded = line.split(" = ", 1)[1]
        assert encoded.startswith("0s")
        assert base64.b64decode(encoded[2:]).decode() == secret

    def test_output_is_deterministic(self, builder, make_tunnel):
        assert builder.build_config(make_tunnel()) == builder.build_config(make_tunnel())

    def test_ah_transport_ikev1(self, builder, make_tunnel):
        tunnel = make_tunnel(mode="ah-transport", crypto=CryptoSuite(ike_version="ikev1", integrity="sha384"))

        content = builder.build_config(tunnel)

        assert "version = 1\n" in content
        assert "mode = transport\n" in content
        assert "ah_proposals = sha384-modp2048\n" in content
        assert "esp_proposals" not in content

    def test_certificate_tunnel_has_no_secrets(self, builder, make_tunnel):
        tunnel = make_tunnel(
            auth=AuthMethod(type="certificate", cert_path="/etc/swanctl/x509/gw.pem",
                            key_path="/etc/swanctl/private/gw.key", ca_cert_path="/etc/swanctl/x509ca/ca.pem"),
            local_id="gw-1.example.net",
            autostart=False,
            mark="42",
        )

        content = builder.build_config(tunnel)

        assert "auth = pubkey\n" in content
        assert "certs = /etc/swanctl/x509/gw.pem\n" in content
        assert "cacerts = /etc/swanctl/x509ca/ca.pem\n" in content
        assert "id = gw-1.example.net\n" in content
        assert "start_action = trap\n" in content
        assert "mark_in = 42\n" in content
        assert "secrets" not in content

    def test_port_and_protocol_selectors(self, builder, make_tunnel):
        tunnel = make_tunnel(traffic_selectors=[
            TrafficSelector(local_subnet="10.1.0.0/24", remote_subnet="10.2.0.0/24", protocol="tcp", remote_port=443),
            TrafficSelector(local_subnet="10.3.0.0/24", remote_subnet="10.4.0.0/24"),
        ])

        content = builder.build_config(tunnel)

        assert "local_ts = 10.1.0.0/24[tcp/%any],10.3.0.0/24\n" in content
        assert "remote_ts = 10.2.0.0/24[tcp/443],10.4.0.0/24\n" in content

    def test_write_config_is_private(self, builder, tmp_path):
        path = builder.write_config("connections {}\n", tmp_path / "conf.d" / "a.conf")

        assert path.read_text() == "connections {}\n"
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600


class TestParseListSas:
    """Tests for parse_list_sas"""

    def test_established_tunnel(self):
        now = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

        status = parse_list_sas("site-a", LIST_SAS_OUTPUT, now=now)

        assert status.state == TunnelState.ESTABLISHED
        assert status.established_at == now - timedelta(seconds=120)
        assert status.last_rekey_at == now - timedelta(seconds=60)
        assert (status.bytes_in, status.packets_in) == (4096, 32)
        assert (status.bytes_out, status.packets_out) == (2048, 16)

    def test_no_sa_means_down(self):
        assert parse_list_sas("site-a", "").state == TunnelState.DOWN

    def test_other_connection_is_ignored(self):
        assert parse_list_sas("site-b", LIST_SAS_OUTPUT).state == TunnelState.DOWN

    def test_rekeying(self):
        output = LIST_SAS_OUTPUT.replace("ESTABLISHED", "REKEYING", 1)

        assert parse_list_sas("site-a", output).state == TunnelState.REKEYING

    def test_unknown_ike_state_is_error(self):
        output = LIST_SAS_OUTPUT.replace("ESTABLISHED", "HALFOPEN", 1)

        status = parse_list_sas("site-a", output)

        assert status.state == TunnelState.ERROR
        assert "HALFOPEN" in status.error_message


class TestStrongSwanManager:
    """Tests for StrongSwanManager with a patched swanctl"""

    @pytest.fixture
    def manager(self, tmp_path):
        return StrongSwanManager(conf_dir=str(tmp_path))

    def test_initialize_creates_conf_dir(self, manager):
        with patch.object(manager, "_run", AsyncMock(return_value=(0, "strongSwan swanctl 5.9.13", ""))):
            run(manager.initialize())

        assert manager.tunnel_dir.is_dir()

    def test_initialize_fails_without_swanctl(self, manager):
        with patch.object(manager, "_run", AsyncMock(return_value=(1, "", "charon not running"))):
            with pytest.raises(BackendError):
                run(manager.initialize())

    def test_create_writes_config_and_loads(self, manager, make_tunnel):
        mock_run = AsyncMock(return_value=(0, "", ""))
        with patch.object(manager, "_run", mock_run):
            run(manager.create_tunnel(make_tunnel("site-a")))

        assert manager.config_path("site-a").exists()
        mock_run.assert_called_once_with("--load-all")

    def test_create_load_failure_names_tunnel(self, manager, make_tunnel):
        with patch.object(manager, "_run", AsyncMock(return_value=(1, "", "parse error"))):
            with pytest.raises(BackendError) as exc_info:
                run(manager.create_tunnel(make_tunnel("site-a")))

        assert exc_info.value.tunnel == "site-a"
        assert exc_info.value.operation == "create"

    def test_delete_removes_file(self, manager, make_tunnel):
        with patch.object(manager, "_run", AsyncMock(return_value=(0, "", ""))) as mock_run:
            run(manager.create_tunnel(make_tunnel("site-a")))
            run(manager.delete_tunnel("site-a"))

        assert not manager.config_path("site-a").exists()
        mock_run.assert_any_call("--terminate", "--ike", "site-a")

    def test_start_uses_child_name(self, manager, make_tunnel):
        with patch.object(manager, "_run", AsyncMock(return_value=(0, "", ""))) as mock_run:
            run(manager.create_tunnel(make_tunnel("site-a")))
            run(manager.start_tunnel("site-a"))

        mock_run.assert_called_with("--initiate", "--child", "site-a-child")

    def test_start_unknown_tunnel(self, manager):
        with pytest.raises(TunnelNotFound):
            run(manager.start_tunnel("missing"))

    def test_status_and_list(self, manager, make_tunnel):
        async def fake_run(*args):
            if args[0] == "--list-sas":
                return 0, LIST_SAS_OUTPUT, ""
            return 0, "", ""

        with patch.object(manager, "_run", AsyncMock(side_effect=fake_run)):
            run(manager.create_tunnel(make_tunnel("site-a")))
            status = run(manager.get_tunnel_status("site-a"))
            tunnels = run(manager.list_tunnels())

        assert status.state == TunnelState.ESTABLISHED
        assert [t.name for t in tunnels] == ["site-a"]

    def test_status_command_failure_reports_error(self, manager, make_tunnel):
        async def fake_run(*args):
            if args[0] == "--list-sas":
                return 1, "", "connection refused"
            return 0, "", ""

        with patch.object(manager, "_run", AsyncMock(side_effect=fake_run)):
            run(manager.create_tunnel(make_tunnel("site-a")))
            status = run(manager.get_tunnel_status("site-a"))

        assert status.state == TunnelState.ERROR
        assert status.error_message == "connection refused"

    @pytest.mark.parametrize("overrides", [
        {"name": "bad name"},
        {"crypto": CryptoSuite(ike_version="ikev3")},
        {"auth": AuthMethod(type="psk", secret="")},
        {"auth": AuthMethod(type="certificate", cert_path="/nonexistent/cert.pem", key_path="/nonexistent/key.pem")},
        {"local_id": 'gw"}\nconnections {'},
        {"remote_id": "peer #1"},
        {"mark": "42\n"},
    ])
    def test_validate_config_rejects(self, manager, make_tunnel, overrides):
        with pytest.raises(ConfigRejected):
            manager.validate_config(make_tunnel(**{"name": "site-a", **overrides}))

    def test_validate_config_accepts_valid(self, manager, make_tunnel):
        manager.validate_config(make_tunnel("site-a"))


class TestFactory:
    """Tests for new_manager"""

    def test_memory_backend(self):
        assert isinstance(new_manager("memory"), MemoryTunnelManager)

    def test_strongswan_backend(self, tmp_path):
        manager = new_manager("strongswan", swanctl_dir=str(tmp_path))

        assert isinstance(manager, StrongSwanManager)
        assert manager.conf_dir == tmp_path

    def test_auto_on_linux(self):
        with patch("ipsec_manager.ipsec.factory.get_platform", return_value="linux"):
            assert isinstance(new_manager("auto"), StrongSwanManager)

    def test_auto_on_unsupported_platform(self):
        with patch("ipsec_manager.ipsec.factory.get_platform", return_value="windows"):
            with pytest.raises(UnsupportedPlatform):
                new_manager("auto")

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            new_manager("racoon")
