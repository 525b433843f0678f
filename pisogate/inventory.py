"""
PisoGate Interface Inventory
============================

Reads the live interface list from the kernel. Nothing here is cached:
every call re-queries `ip`, since links come and go with USB adapters,
VLAN provisioning and PPPoE sessions.

Author: Team PisoGate
"""

import json
import re
from typing import Any, Dict, List, Optional

from loguru import logger

from . import commands
from .errors import CommandError
from .models import Interface

WIFI_PREFIXES = ("wlan", "wlp", "ap", "ra")
_DEV_RE = re.compile(r"\bdev\s+(\S+)")


def interface_kind(entry: Dict[str, Any]) -> str:
    """Kind of one `ip -d -j addr show` entry."""
    name = (entry.get("ifname") or "").lower()
    link_type = (entry.get("link_type") or "").lower()
    info_kind = ((entry.get("linkinfo") or {}).get("info_kind") or "").lower()

    if link_type == "loopback" or name == "lo":
        return "loopback"
    if info_kind == "vlan":
        return "vlan"
    if info_kind == "bridge":
        return "bridge"
    if name.startswith(WIFI_PREFIXES):
        return "wifi"
    if name.startswith("br"):
        return "bridge"
    if "." in name:
        return "vlan"
    return "ethernet"


def parse_interfaces(data: List[Dict[str, Any]]) -> List[Interface]:
    interfaces = []
    for entry in data:
        name = entry.get("ifname")
        if not name:
            continue
        operstate = (entry.get("operstate") or "").lower()
        address = next((a.get("local") for a in entry.get("addr_info") or []
                        if a.get("family") == "inet"), None)
        interfaces.append(Interface(
            name=name,
            kind=interface_kind(entry),
            oper_state="up" if operstate in ("up", "unknown") else "down",
            address=address,
            hardware_address=entry.get("address"),
            master=entry.get("master"),
        ))
    return interfaces


class InterfaceInventory:
    """Queries interfaces, bridge membership and routes through a command runner."""

    def __init__(self, runner):
        self.runner = runner

    def _addr_json(self) -> List[Dict[str, Any]]:
        result = self.runner.run(commands.ip_addr_show_json(), check=True)
        try:
            return json.loads(result.stdout or "[]")
        except json.JSONDecodeError as e:
            logger.error(f"Unparseable interface list from ip: {e}")
            return []

    def list_interfaces(self) -> List[Interface]:
        """
        Current interfaces with kind, state, first IPv4 and bridge master.

        Returns an empty list when `ip` itself fails.
        """
        try:
            return parse_interfaces(self._addr_json())
        except CommandError as e:
            logger.error(f"Error getting interfaces: {e}")
            return []

    def get(self, name: str) -> Optional[Interface]:
        return next((i for i in self.list_interfaces() if i.name == name), None)

    def exists(self, name: str) -> bool:
        return self.runner.run(commands.ip_link_show(name), check=False).ok

    def link_master(self, name: str) -> Optional[str]:
        """Bridge an interface is enslaved to, or None."""
        result = self.runner.run(commands.ip_link_show_json(name), check=False)
        if not result.ok:
            return None
        try:
            data = json.loads(result.stdout or "[]")
        except json.JSONDecodeError:
            return None
        return data[0].get("master") if data else None

    def route_interface(self, address: str) -> Optional[str]:
        """Interface the kernel would use to reach an address."""
        result = self.runner.run(commands.ip_route_get(address), check=False)
        if not result.ok:
            logger.debug(f"No route to {address}: {result.output}")
            return None
        match = _DEV_RE.search(result.stdout)
        return match.group(1) if match else None

    def vlan_interfaces(self) -> List[str]:
        return [i.name for i in self.list_interfaces() if i.kind == "vlan"]

    def managed_interfaces(self) -> List[str]:
        """Every non-loopback interface; the final sweep target for tc cleanup."""
        return [i.name for i in self.list_interfaces() if i.kind != "loopback"]

    def detect_network_config(self) -> Dict[str, List[Dict[str, Any]]]:
        """
        Live VLANs and bridges, in the same shape as the persisted rows.

        Used by the console to import a hand-made topology.
        """
        try:
            data = self._addr_json()
        except CommandError as e:
            logger.error(f"Detect config error: {e}")
            return {"vlans": [], "bridges": []}

        by_index = {e.get("ifindex"): e.get("ifname") for e in data}
        vlans = []
        bridges = []
        for entry in data:
            info = entry.get("linkinfo") or {}
            kind = info.get("info_kind")
            name = entry.get("ifname")
            if kind == "vlan":
                parent = entry.get("link")
                if isinstance(parent, int) or parent is None:
                    parent = by_index.get(entry.get("link_index", parent), "unknown")
                vlans.append({"name": name, "parent": parent,
                              "vlan_id": (info.get("info_data") or {}).get("id")})
            elif kind == "bridge":
                members = [e.get("ifname") for e in data if e.get("master") == name]
                stp = bool((info.get("info_data") or {}).get("stp_state"))
                bridges.append({"name": name, "members": members, "stp": stp})
        return {"vlans": vlans, "bridges": bridges}
