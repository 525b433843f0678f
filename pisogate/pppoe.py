#!/usr/bin/env python3
"""
PisoGate PPPoE Subsystem Driver
===============================

Runs rp-pppoe's pppoe-server as an access concentrator on one interface.

Features:
- Kernel module loading, bridge-master substitution
- Options file and PAP/CHAP secrets regenerated in full (mode 0600)
- Supervised launch with start verification and failure diagnosis
- Session listing from ppp interfaces, sysfs counters and the pppd log
- Daemon log forwarding to loguru

Author: Team PisoGate
"""

import os
import re
import subprocess
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from . import commands
from .errors import CommandError, FirewallError, PPPoEStartError, ValidationError
from .models import PPPoEServerConfig, PPPoEUser
from .runner import best_effort
from .supervisor import ProcessState, SupervisedProcess
from .validation import validate_credential, validate_host_ipv4, validate_ifname, validate_ipv4

SERVER_BINARY = "pppoe-server"


class LogTailer:
    """
    Follows the pppd and pppoe-server logs (`tail -F`) and forwards each
    line to the logger. Owned by one PPPoEDriver; start/stop are idempotent.
    """

    def __init__(self, paths: List[str], popen: Callable[..., Any] = subprocess.Popen):
        self.paths = list(paths)
        self._popen = popen
        self._proc = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            try:
                self._proc = self._popen(["tail", "-n", "0", "-F"] + self.paths,
                                         stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True)
            except OSError as e:
                logger.warning(f"Cannot tail PPPoE logs: {e}")
                self._proc = None
                return
            self._thread = threading.Thread(target=self._pump, args=(self._proc,), daemon=True)
            self._thread.start()
            logger.debug("PPPoE log tailing started")

    def _pump(self, proc) -> None:
        for line in iter(proc.stdout.readline, ""):
            line = line.rstrip("\n")
            if line:
                logger.info(f"[PPPoE-LOG] {line}")
        proc.stdout.close()

    def stop(self) -> None:
        with self._lock:
            if self._proc is None:
                return
            if self._proc.poll() is None:
                self._proc.terminate()
                try:
                    self._proc.wait(timeout=2)
                except subprocess.TimeoutExpired:
                    self._proc.kill()
            self._proc = None
            logger.debug("PPPoE log tailing stopped")


def render_options(config: PPPoEServerConfig, mtu: int, logfile: str) -> str:
    lines = [
        "# PisoGate PPPoE Server Options",
        "lock",
        "local",
        "name pppoe-server",
        "auth",
        "require-mschap-v2",
        f"ms-dns {config.dns1}",
        f"ms-dns {config.dns2}",
        "netmask 255.255.255.0",
        "defaultroute",
        "noipdefault",
        "usepeerdns",
        "proxyarp",
        "ktune",
        "nobsdcomp",
        "nodeflate",
        "novj",
        "novjccomp",
        "nocrtscts",
        "refuse-eap",
        f"mru {mtu}",
        f"mtu {mtu}",
        "idle 0",
        "debug",
        "dump",
        f"logfile {logfile}",
    ]
    return "\n".join(lines) + "\n"


def render_secrets(users: List[PPPoEUser]) -> str:
    content = "# PisoGate PPPoE Secrets\n# client\tserver\tsecret\t\tIP addresses\n"
    for user in users:
        if user.enabled:
            content += f'"{user.username}"\t*\t"{user.password}"\t*\n'
    return content


class PPPoEDriver:
    """
    Lifecycle of the PPPoE server and its user secrets.

    firewall_hook is called after a verified start so ppp+ rules are in
    place for the new tunnels.
    """

    def __init__(self, runner, inventory, store, config,
                 firewall_hook: Optional[Callable[[], Any]] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 popen: Callable[..., Any] = subprocess.Popen):
        self.runner = runner
        self.inventory = inventory
        self.store = store
        self.config = config
        self.firewall_hook = firewall_hook
        self._sleep = sleep
        paths = config.paths
        self.process = SupervisedProcess(runner, SERVER_BINARY, config.pppoe.start_grace_seconds,
                                         log_path=paths.pppoe_log, sleep=sleep)
        self.tailer = LogTailer([paths.pppd_log, paths.pppoe_log], popen=popen)

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    @property
    def ppp_dir(self) -> Path:
        return Path(self.config.paths.ppp_dir)

    @property
    def options_path(self) -> Path:
        return self.ppp_dir / "pppoe-server-options"

    def _write(self, path: Path, content: str, mode: Optional[int] = None) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        if mode is not None:
            os.chmod(path, mode)

    def list_users(self) -> List[PPPoEUser]:
        return [PPPoEUser.from_row(r) for r in self.store.list("pppoe_users")]

    def sync_secrets(self) -> int:
        """Regenerate pap-secrets and chap-secrets from the enabled users."""
        users = [u for u in self.list_users() if u.enabled]
        content = render_secrets(users)
        for name in ("pap-secrets", "chap-secrets"):
            self._write(self.ppp_dir / name, content, 0o600)
        logger.info(f"Synced {len(users)} PPPoE user(s) to secrets files")
        return len(users)

    def _reset_logs(self) -> None:
        for path in (self.config.paths.pppd_log, self.config.paths.pppoe_log):
            try:
                Path(path).parent.mkdir(parents=True, exist_ok=True)
                Path(path).write_text("")
            except OSError as e:
                logger.warning(f"Cannot reset {path}: {e}")

    def _remove_stale_files(self) -> None:
        patterns = [(self.config.paths.run_dir, "ppp*.pid"),
                    (self.config.paths.run_dir, "pppoe-server.pid"),
                    (self.config.paths.lock_dir, "LCK..*")]
        for directory, pattern in patterns:
            for path in Path(directory).glob(pattern):
                try:
                    path.unlink()
                except FileNotFoundError:
                    continue

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def add_user(self, username: str, password: str) -> PPPoEUser:
        user = PPPoEUser(username=validate_credential(username, "username"),
                         password=validate_credential(password, "password"))
        try:
            self.store.insert("pppoe_users", user.to_row())
        except KeyError:
            raise ValidationError(f"PPPoE user {username!r} already exists")
        self.sync_secrets()
        logger.info(f"PPPoE user added: {username}")
        return user

    def update_user(self, username: str, password: Optional[str] = None,
                    enabled: Optional[bool] = None, new_username: Optional[str] = None) -> PPPoEUser:
        row = self.store.get("pppoe_users", username)
        if row is None:
            raise ValidationError(f"PPPoE user {username!r} not found")
        user = PPPoEUser.from_row(row)
        if password is not None:
            user.password = validate_credential(password, "password")
        if enabled is not None:
            user.enabled = bool(enabled)
        if new_username and new_username != username:
            user.username = validate_credential(new_username, "username")
            if self.store.get("pppoe_users", user.username):
                raise ValidationError(f"PPPoE user {new_username!r} already exists")
            self.store.delete("pppoe_users", username)
            self.store.insert("pppoe_users", user.to_row())
        else:
            self.store.update("pppoe_users", username, {"password": user.password, "enabled": int(user.enabled)})
        self.sync_secrets()
        return user

    def delete_user(self, username: str) -> bool:
        removed = self.store.delete("pppoe_users", username)
        self.sync_secrets()
        if removed:
            logger.info(f"PPPoE user deleted: {username}")
        return removed

    # ------------------------------------------------------------------
    # Server lifecycle
    # ------------------------------------------------------------------

    def _has_address(self, interface: str, address: str) -> bool:
        result = self.runner.run(commands.ip_addr_show_dev(interface), check=False)
        return result.ok and f"inet {address}/" in result.stdout

    def _diagnose(self, interface: str) -> str:
        if not self.runner.which(SERVER_BINARY):
            return "pppoe-server binary not found (install rp-pppoe)"
        if not self.inventory.exists(interface):
            return f"Interface {interface} does not exist"
        try:
            lines = Path(self.config.paths.pppoe_log).read_text().strip().splitlines()
        except OSError:
            lines = []
        return "\n".join(lines[-5:]) or "Server exited immediately with no log output"

    def start(self, server: PPPoEServerConfig, rebuild_firewall: bool = True) -> PPPoEServerConfig:
        """
        Start the server and persist its row once it is verified running.

        rebuild_firewall=False leaves the ppp+ rules to a caller that
        rebuilds the firewall itself afterwards.

        Raises:
            PPPoEStartError: with a diagnosis when the daemon does not come up
        """
        requested = validate_ifname(server.interface)
        validate_host_ipv4(server.local_ip)
        validate_host_ipv4(server.ip_pool_start)
        validate_host_ipv4(server.ip_pool_end)
        validate_ipv4(server.dns1)
        validate_ipv4(server.dns2)
        if server.service_name and not re.match(r"^[A-Za-z0-9_.-]{1,32}$", server.service_name):
            raise ValidationError(f"Invalid PPPoE service name: {server.service_name!r}")

        logger.info(f"Starting PPPoE server on {requested}")
        for module in self.config.pppoe.kernel_modules:
            best_effort(self.runner, commands.modprobe(module), expected=["module_missing"])

        target = requested
        master = self.inventory.link_master(requested)
        if master:
            logger.info(f"Interface {requested} is a member of {master}; using {master}")
            target = master

        self.stop(target, persist=False)

        try:
            self.runner.run(commands.ip_link_set_state(target, True), check=True)
        except CommandError as e:
            raise PPPoEStartError(f"PPPoE server failed to start: cannot bring up {target}: {e}", e) from e

        # added alongside existing addresses, never flushed
        if not self._has_address(target, server.local_ip):
            best_effort(self.runner, commands.ip_addr_add(server.local_ip, 24, target), expected=["file_exists"])

        try:
            self._write(self.options_path, render_options(server, self.config.pppoe.mtu, self.config.paths.pppd_log))
            self.sync_secrets()
        except OSError as e:
            raise PPPoEStartError(f"PPPoE server failed to start: {e}", e) from e
        self._reset_logs()

        if not self.runner.which(SERVER_BINARY):
            raise PPPoEStartError("pppoe-server binary not found (install rp-pppoe)")

        argv = commands.pppoe_server(target, server.local_ip, server.ip_pool_start, server.pool_size,
                                     str(self.options_path), server.service_name)
        result = self.process.start(argv)
        if self.config.pppoe.tail_log:
            self.tailer.start()

        if not result.ok:
            diagnosis = self._diagnose(target)
            logger.error(f"PPPoE server failed to start: {diagnosis}")
            raise PPPoEStartError(f"PPPoE server failed to start: {diagnosis}")

        effective = PPPoEServerConfig(**{**server.__dict__, "interface": target, "enabled": True})
        if target != requested:
            self.store.delete("pppoe_server", requested)
        self.store.upsert("pppoe_server", effective.to_row())
        logger.info(f"PPPoE server started on {target}")

        if rebuild_firewall and self.firewall_hook:
            try:
                self.firewall_hook()
            except FirewallError as e:
                logger.warning(f"Firewall rebuild after PPPoE start incomplete: {e}")
        return effective

    def stop(self, interface: Optional[str] = None, persist: bool = True) -> None:
        """Kill pppoe-server and every pppd, clear stale pid/lock files."""
        logger.info(f"Stopping PPPoE server{' on ' + interface if interface else ''}")
        self.process.stop()
        best_effort(self.runner, commands.pkill_kill("pppd"), expected=["no_such_process"])
        self._remove_stale_files()
        self.tailer.stop()
        if self.config.pppoe.stop_settle_seconds > 0:
            self._sleep(self.config.pppoe.stop_settle_seconds)
        if interface and persist:
            self.store.update("pppoe_server", interface, {"enabled": 0})

    def is_running(self) -> bool:
        return self.process.refresh() == ProcessState.RUNNING

    def sessions(self) -> List[Dict[str, Any]]:
        """Active PPP tunnels with address, byte counters and username."""
        try:
            log = Path(self.config.paths.pppd_log).read_text()
        except OSError:
            log = ""
        sysfs = Path(self.config.pppoe.sysfs_net)

        sessions = []
        for iface in self.inventory.list_interfaces():
            if not iface.name.startswith("ppp"):
                continue
            match = re.search(rf"{re.escape(iface.name)}.*user\s+'([^']+)'", log, re.I)
            counters = {}
            for key in ("rx_bytes", "tx_bytes"):
                try:
                    counters[key] = int((sysfs / iface.name / "statistics" / key).read_text().strip())
                except (OSError, ValueError):
                    counters[key] = 0
            sessions.append({
                "username": match.group(1) if match else "Unknown",
                "ip": iface.address or "N/A",
                "interface": iface.name,
                **counters,
            })
        return sessions

    def status(self) -> Dict[str, Any]:
        rows = self.store.list("pppoe_server")
        config = next((r for r in rows if r.get("enabled")), rows[0] if rows else None)
        running = self.is_running()
        if not running and (not config or not config.get("enabled")):
            return {"running": False, "state": self.process.state.value, "config": config,
                    "sessions": [], "total_users": 0, "message": "PPPoE server is not running"}
        sessions = self.sessions()
        return {
            "running": running,
            "state": self.process.state.value,
            "config": config,
            "sessions": sessions,
            "total_users": len(sessions),
            "message": "Server is operational" if running else "Server is configured but offline",
        }
