"""
PPPoE Driver Tests
==================

Secrets files, server start/stop, session listing and daemon log
forwarding.
"""

import io
import stat

import pytest
from loguru import logger

from pisogate.errors import PPPoEStartError, ValidationError
from pisogate.models import PPPoEServerConfig, PPPoEUser
from pisogate.pppoe import LogTailer, render_options, render_secrets


SERVER = PPPoEServerConfig(interface="eth1", local_ip="10.0.0.1", ip_pool_start="10.0.0.100",
                           ip_pool_end="10.0.0.200")


class TestRendering:

    def test_secrets_skip_disabled_users(self):
        content = render_secrets([PPPoEUser("alice", "s3cret"), PPPoEUser("bob", "hunter22", enabled=False)])
        assert '"alice"\t*\t"s3cret"\t*\n' in content
        assert "bob" not in content

    def test_options(self):
        content = render_options(SERVER, 1492, "/var/log/pppd.log")
        assert "ms-dns 8.8.8.8\n" in content
        assert "mtu 1492\n" in content
        assert "logfile /var/log/pppd.log\n" in content
        assert "require-mschap-v2\n" in content


class TestUsers:

    def test_secrets_files_are_private(self, engine, tmp_path):
        engine.pppoe.add_user("alice", "s3cret")
        for name in ("pap-secrets", "chap-secrets"):
            path = tmp_path / "ppp" / name
            assert '"alice"' in path.read_text()
            assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_duplicate_user(self, engine):
        engine.pppoe.add_user("alice", "s3cret")
        with pytest.raises(ValidationError):
            engine.pppoe.add_user("alice", "other")

    @pytest.mark.parametrize("username,password", [('al"ice', "s3cret"), ("alice", "has space"), ("", "x")])
    def test_credentials_cannot_break_the_file(self, engine, username, password):
        with pytest.raises(ValidationError):
            engine.pppoe.add_user(username, password)

    def test_disable_and_rename(self, engine, tmp_path, store):
        engine.pppoe.add_user("alice", "s3cret")
        engine.pppoe.update_user("alice", enabled=False)
        assert '"alice"' not in (tmp_path / "ppp" / "pap-secrets").read_text()
        engine.pppoe.update_user("alice", enabled=True, new_username="alicia")
        assert store.get("pppoe_users", "alice") is None
        assert '"alicia"' in (tmp_path / "ppp" / "chap-secrets").read_text()

    def test_delete(self, engine, tmp_path):
        engine.pppoe.add_user("alice", "s3cret")
        assert engine.pppoe.delete_user("alice") is True
        assert '"alice"' not in (tmp_path / "ppp" / "pap-secrets").read_text()
        assert engine.pppoe.delete_user("alice") is False


class TestServerLifecycle:

    def test_start_on_bridge_master(self, lan_engine, lan_kernel, store):
        effective = lan_engine.pppoe.start(SERVER)
        assert effective.interface == "br0"

        argv = lan_kernel.spawned[-1]
        assert argv[0] == "pppoe-server"
        assert argv[argv.index("-I") + 1] == "br0"
        assert argv[argv.index("-N") + 1] == "101"

        assert store.get("pppoe_server", "eth1") is None
        assert store.get("pppoe_server", "br0")["enabled"] == 1
        assert lan_engine.pppoe.is_running()
        # address already present, no duplicate and no flush
        assert not lan_kernel.calls_matching("ip", "addr", "flush", "dev", "br0")
        assert lan_kernel.links["br0"]["addrs"] == ["10.0.0.1/24"]

    def test_start_installs_ppp_rules(self, lan_engine, lan_kernel):
        lan_engine.pppoe.start(SERVER)
        assert ["-i", "ppp+", "-j", "ACCEPT"] == lan_kernel.rules("PREROUTING", table="nat")[0]
        assert lan_kernel.calls_matching("modprobe", "pppoe")

    def test_missing_module_is_tolerated(self, lan_engine, lan_kernel):
        lan_kernel.missing_modules.add("ppp_mppe")
        assert lan_engine.pppoe.start(SERVER).interface == "br0"

    def test_daemon_dies(self, lan_engine, lan_kernel, store):
        lan_kernel.dying.add("pppoe-server")
        with pytest.raises(PPPoEStartError) as exc:
            lan_engine.pppoe.start(SERVER)
        assert "no log output" in str(exc.value)
        assert store.list("pppoe_server") == []

    def test_missing_binary(self, lan_engine, lan_kernel, store):
        lan_kernel.missing_binaries.add("pppoe-server")
        with pytest.raises(PPPoEStartError) as exc:
            lan_engine.pppoe.start(SERVER)
        assert "rp-pppoe" in str(exc.value)
        assert lan_kernel.spawned == []
        assert store.list("pppoe_server") == []

    def test_invalid_pool(self, lan_engine):
        bad = PPPoEServerConfig(interface="eth1", local_ip="10.0.0.1", ip_pool_start="10.0.0.0",
                                ip_pool_end="10.0.0.200")
        with pytest.raises(ValidationError):
            lan_engine.pppoe.start(bad)

    def test_stop(self, lan_engine, lan_kernel, store, tmp_path):
        lan_engine.pppoe.start(SERVER)
        (tmp_path / "run").mkdir(exist_ok=True)
        (tmp_path / "run" / "ppp0.pid").write_text("123")
        lan_engine.pppoe.stop("br0")
        assert not lan_engine.pppoe.is_running()
        assert store.get("pppoe_server", "br0")["enabled"] == 0
        assert not (tmp_path / "run" / "ppp0.pid").exists()
        assert lan_kernel.calls_matching("pkill", "-9", "-x", "pppd")

    def test_status_when_stopped(self, engine):
        status = engine.pppoe.status()
        assert status["running"] is False
        assert status["sessions"] == []


class TestSessions:

    def test_tunnels_listed_with_user_and_counters(self, lan_engine, lan_kernel, tmp_path):
        lan_kernel.add_link("ppp0", addr="10.0.0.100/32")
        log = tmp_path / "log" / "pppd.log"
        log.parent.mkdir(parents=True, exist_ok=True)
        log.write_text("Plugin rp-pppoe.so loaded.\nppp0: user 'alice' logged in\n")
        stats = tmp_path / "sys" / "class" / "net" / "ppp0" / "statistics"
        stats.mkdir(parents=True)
        (stats / "rx_bytes").write_text("1234\n")

        assert lan_engine.pppoe.sessions() == [{
            "username": "alice", "ip": "10.0.0.100", "interface": "ppp0",
            "rx_bytes": 1234, "tx_bytes": 0,
        }]

    def test_unknown_user(self, lan_engine, lan_kernel):
        lan_kernel.add_link("ppp1", addr="10.0.0.101/32")
        assert lan_engine.pppoe.sessions()[0]["username"] == "Unknown"


class FakeTail:
    def __init__(self, argv, text):
        self.argv = argv
        self.stdout = io.StringIO(text)
        self.terminated = False

    def poll(self):
        return 0 if self.terminated else None

    def terminate(self):
        self.terminated = True

    def wait(self, timeout=None):
        return 0

    def kill(self):
        self.terminated = True


class TestLogTailer:

    @pytest.fixture
    def captured(self):
        messages = []
        handler_id = logger.add(lambda m: messages.append(m.record["message"]), level="INFO")
        yield messages
        logger.remove(handler_id)

    def test_forwards_lines(self, captured):
        spawned = []

        def popen(argv, **kwargs):
            spawned.append(FakeTail(argv, "LCP: timeout sending Config-Requests\n\nsession 1 up\n"))
            return spawned[-1]

        tailer = LogTailer(["/var/log/pppd.log", "/var/log/pppoe-server.log"], popen=popen)
        tailer.start()
        tailer.start()
        tailer._thread.join(timeout=2)

        assert len(spawned) == 1
        assert spawned[0].argv == ["tail", "-n", "0", "-F", "/var/log/pppd.log", "/var/log/pppoe-server.log"]
        assert "[PPPoE-LOG] LCP: timeout sending Config-Requests" in captured
        assert "[PPPoE-LOG] session 1 up" in captured

        tailer.stop()
        assert spawned[0].terminated
        assert not tailer.running
        tailer.stop()

    def test_missing_tail_binary(self):
        def popen(argv, **kwargs):
            raise FileNotFoundError("tail")

        tailer = LogTailer(["/var/log/pppd.log"], popen=popen)
        tailer.start()
        assert not tailer.running
