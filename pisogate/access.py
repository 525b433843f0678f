#!/usr/bin/env python3
"""
PisoGate Access Controller
==========================

Opens and closes the captive-portal gate for one client.

grant():
- FORWARD accept for the hardware address
- nat PREROUTING accept (skips the portal redirect)
- DNS DNAT to the trusted external resolver (udp + tcp)
- conntrack flush, effective bandwidth limit, device record sync

revoke():
- bandwidth limit removed, grant rules removed
- FORWARD drop at the head of the chain, conntrack flush

Both first delete any rules a previous call left behind, so they can be
repeated and reordered freely.

Author: Team PisoGate
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple

from loguru import logger

from . import commands
from .errors import CommandError, ProvisioningError
from .models import ClientSession, DeviceRecord
from .runner import best_effort, delete_until_absent
from .validation import client_ipv4, validate_mac


@dataclass
class AccessResult:
    mac: str
    ip: Optional[str]
    action: str
    download_mbps: float = 0
    upload_mbps: float = 0
    interface: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.warnings


def resolve_limits(device: Optional[DeviceRecord], session: Optional[ClientSession],
                   defaults: Tuple[float, float], auto_apply: bool) -> Tuple[float, float]:
    """
    Effective (download, upload) in Mbps.

    Per direction: device override > session plan > default (only when
    auto-apply is on) > 0 (unlimited).
    """
    def pick(device_value, session_value, default_value):
        if device_value and device_value > 0:
            return device_value
        if session_value and session_value > 0:
            return session_value
        if auto_apply:
            return default_value
        return 0

    download = pick(device.download_limit if device else 0,
                    session.download_limit if session else 0, defaults[0])
    upload = pick(device.upload_limit if device else 0,
                  session.upload_limit if session else 0, defaults[1])
    return download, upload


class AccessController:
    """Per-client grant/revoke, serialized per hardware address."""

    def __init__(self, runner, inventory, store, config, limiter, locks, rebuild_lock):
        self.runner = runner
        self.inventory = inventory
        self.store = store
        self.config = config
        self.limiter = limiter
        self.locks = locks
        self.rebuild_lock = rebuild_lock

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def _grant_rules(self, mac: str) -> List[Tuple[str, str, List[str]]]:
        """(table, chain, rule) for every rule grant() installs."""
        resolver = self.config.firewall.trusted_dns
        return [
            ("filter", "FORWARD", commands.forward_mac_rule(mac, "ACCEPT")),
            ("nat", "PREROUTING", commands.portal_bypass_rule(mac)),
            ("nat", "PREROUTING", commands.dns_dnat_rule(mac, "udp", resolver)),
            ("nat", "PREROUTING", commands.dns_dnat_rule(mac, "tcp", resolver)),
        ]

    def _clean(self, mac: str) -> None:
        """Remove every grant/revoke rule for a hardware address."""
        rules = self._grant_rules(mac) + [("filter", "FORWARD", commands.forward_mac_rule(mac, "DROP"))]
        for table, chain, rule in rules:
            delete_until_absent(self.runner, commands.ipt_delete(chain, rule, table=table))

    def _insert(self, chain: str, rule: List[str], position: int = 1, table: str = "filter") -> None:
        try:
            self.runner.run(commands.ipt_insert(chain, rule, position, table=table), check=True)
        except CommandError as e:
            raise ProvisioningError(f"Failed to insert {table}/{chain} rule: {e}", e) from e

    def _flush_conntrack(self, ip: str) -> None:
        for direction in ("src", "dst"):
            best_effort(self.runner, commands.conntrack_flush(ip, direction), expected=["conntrack_empty"])

    # ------------------------------------------------------------------
    # Limits / device records
    # ------------------------------------------------------------------

    def _defaults(self) -> Tuple[Tuple[float, float], bool]:
        qos = self.config.qos
        download = float(self.store.get_config("default_download_limit") or qos.default_download_mbps)
        upload = float(self.store.get_config("default_upload_limit") or qos.default_upload_mbps)
        auto_apply = (self.store.get_config("auto_apply_bandwidth") or "1") == "1"
        return (download, upload), auto_apply

    def effective_limits(self, mac: str) -> Tuple[float, float]:
        device_row = self.store.get("wifi_devices", mac)
        session_row = self.store.get("sessions", mac)
        defaults, auto_apply = self._defaults()
        return resolve_limits(
            DeviceRecord.from_row(device_row) if device_row else None,
            ClientSession.from_row(session_row) if session_row else None,
            defaults, auto_apply,
        )

    def _sync_device(self, mac: str, ip: str, interface: Optional[str]) -> None:
        now = datetime.now().isoformat()
        existing = self.store.get("wifi_devices", mac)
        if existing:
            # limits stay as the operator set them
            self.store.update("wifi_devices", mac, {"ip": ip, "interface": interface or "unknown", "last_seen": now})
        else:
            self.store.insert("wifi_devices", DeviceRecord(mac=mac, ip=ip, interface=interface or "unknown",
                                                           last_seen=now).to_row())

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def grant(self, mac: str, ip: Optional[str] = None) -> AccessResult:
        """
        Let a client through the gate.

        Args:
            mac: Client hardware address
            ip: Client address; limits, conntrack and the device record
                need it and are skipped when it is empty or a placeholder

        Returns:
            AccessResult with the applied limits and any non-fatal warnings

        Raises:
            ValidationError: malformed hardware or client address
        """
        mac = validate_mac(mac)
        result = AccessResult(mac=mac, ip=client_ipv4(ip), action="grant")
        logger.info(f"Granting access: {mac} ({ip or 'no ip'})")

        with self.rebuild_lock.shared(), self.locks.hold(mac):
            self._clean(mac)
            forward, bypass, dns_udp, dns_tcp = self._grant_rules(mac)
            self._insert(forward[1], forward[2], 1, table=forward[0])
            self._insert(bypass[1], bypass[2], 1, table=bypass[0])
            self._insert(dns_udp[1], dns_udp[2], 1, table=dns_udp[0])
            self._insert(dns_tcp[1], dns_tcp[2], 2, table=dns_tcp[0])

            if result.ip:
                self._flush_conntrack(result.ip)
                download, upload = self.effective_limits(mac)
                result.download_mbps, result.upload_mbps = download, upload
                # 0/0 clears whatever an earlier grant installed
                try:
                    result.interface = self.limiter.set_limit(result.ip, download, upload)
                except ProvisioningError as e:
                    logger.warning(f"Limit for {mac} not applied: {e}")
                    result.warnings.append(str(e))
                if result.interface is None:
                    result.interface = self.inventory.route_interface(result.ip)
                self._sync_device(mac, result.ip, result.interface)

        return result

    def revoke(self, mac: str, ip: Optional[str] = None) -> AccessResult:
        """Send a client back to the portal and cut its open connections."""
        mac = validate_mac(mac)
        result = AccessResult(mac=mac, ip=client_ipv4(ip), action="revoke")
        logger.info(f"Revoking access: {mac} ({ip or 'no ip'})")

        with self.rebuild_lock.shared(), self.locks.hold(mac):
            if result.ip:
                self.limiter.remove_limit(result.ip)
            self._clean(mac)
            self._insert("FORWARD", commands.forward_mac_rule(mac, "DROP"), 1)
            if result.ip:
                self._flush_conntrack(result.ip)

        return result

    def refresh(self, mac: str, ip: str) -> AccessResult:
        """Re-apply a grant, e.g. after a client roams between segments."""
        result = self.grant(mac, ip)
        if result.ip:
            # wakes the client's ARP entry; no reply is fine
            self.runner.run(["ping", "-c", "1", "-W", "1", result.ip], check=False, timeout=3)
        return result
