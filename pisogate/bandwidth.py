#!/usr/bin/env python3
"""
PisoGate Bandwidth Limiter
==========================

Per-client rate limits with tc.

Download is shaped with an HTB class under the root `1:` qdisc plus a
u32 destination filter; upload is policed on the ingress qdisc with a
u32 source filter. Identifiers come from the client IPv4 last octet n:

- download class  1:<n>0
- upload class id 1:<n>1
- leaf qdisc      <n>0:
- filter pref     100+n (used to delete both filters)

The root default class is 1:1 with leaf fffe:, and 1:5 / 5: are reserved
for the gaming priority class, so no client id can collide with them.

Author: Team PisoGate
"""

import re
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Set

from loguru import logger

from . import commands
from .errors import CommandError, ProvisioningError
from .runner import best_effort
from .validation import validate_host_ipv4, validate_rate_mbps

ROOT_HANDLE = "1:"
DEFAULT_CLASS = "1:1"
DEFAULT_LEAF = "fffe:"
INGRESS_PARENT = "ffff:"
DOWNLOAD_PARENT = "1:0"
PRIO_BASE = 100

TC_CLEANUP = ["tc_no_object", "tc_invalid_argument", "no_such_device"]

_ROOT_RE = re.compile(r"qdisc htb 1: root")
_INGRESS_RE = re.compile(r"qdisc ingress ffff:")
_PREF_RE = re.compile(r"\bpref (\d+)\b")
_CLASS_RE = re.compile(r"^class htb (\S+)", re.M)
_QDISC_RE = re.compile(r"^qdisc (\S+) (\S+)(?: parent (\S+))?", re.M)
_MATCH_RE = re.compile(r"^\s*match ([0-9a-f]{8})/ffffffff at (?:12|16)\b")
_FLOWID_RE = re.compile(r"\bflowid (\S+)")


@dataclass(frozen=True)
class ClassIds:
    octet: int
    download: str
    upload: str
    leaf: str
    prio: int


def class_ids_for_octet(octet: int) -> ClassIds:
    if octet < 1 or octet > 254:
        raise ValueError(f"Octet out of range: {octet}")
    return ClassIds(
        octet=octet,
        download=f"1:{octet}0",
        upload=f"1:{octet}1",
        leaf=f"{octet}0:",
        prio=PRIO_BASE + octet,
    )


def class_ids_for(ip: str) -> ClassIds:
    """Deterministic tc identifiers for a client address."""
    address = validate_host_ipv4(ip)
    return class_ids_for_octet(int(address.rsplit(".", 1)[1]))


def hex_address(ip: str) -> str:
    """An address as tc prints it in u32 match keys (10.0.0.42 -> 0a00002a)."""
    return "".join(f"{int(o):02x}" for o in validate_host_ipv4(ip).split("."))


class BandwidthLimiter:
    """
    Installs and removes per-client tc objects.

    Calls for the same client IP are serialized; different clients run in
    parallel.
    """

    def __init__(self, runner, inventory, store, config, locks, rebuild_lock,
                 on_root_created: Optional[Callable[[str], None]] = None):
        self.runner = runner
        self.inventory = inventory
        self.store = store
        self.config = config
        self.locks = locks
        self.rebuild_lock = rebuild_lock
        self.on_root_created = on_root_created

    @property
    def discipline(self) -> str:
        return self.store.get_config("qos_discipline") or self.config.qos.discipline

    def _settle(self):
        if self.config.qos.settle_seconds > 0:
            time.sleep(self.config.qos.settle_seconds)

    def _must(self, argv: List[str], what: str) -> None:
        try:
            self.runner.run(argv, check=True)
        except CommandError as e:
            raise ProvisioningError(f"Failed to {what}: {e}", e) from e

    # ------------------------------------------------------------------
    # Root and ingress qdiscs
    # ------------------------------------------------------------------

    def has_root(self, interface: str) -> bool:
        result = self.runner.run(commands.tc_show("qdisc", interface), check=False)
        return result.ok and bool(_ROOT_RE.search(result.stdout))

    def init_qos(self, interface: str, discipline: Optional[str] = None) -> None:
        """Replace whatever root qdisc exists with the HTB tree."""
        discipline = discipline or self.discipline
        rate = self.config.qos.root_rate_mbps
        logger.info(f"Initializing HTB root with {discipline} on {interface}")
        best_effort(self.runner, commands.tc_root_del(interface), expected=TC_CLEANUP)
        self._must(commands.tc_root_htb(interface, default_minor=1), f"add root qdisc on {interface}")
        self._must(commands.tc_class_add(interface, DEFAULT_CLASS, rate, rate), f"add default class on {interface}")
        self._must(commands.tc_leaf_add(interface, DEFAULT_CLASS, DEFAULT_LEAF, discipline, rate),
                   f"add default leaf on {interface}")

    def ensure_root(self, interface: str) -> bool:
        """Create the HTB root if missing. Returns True if it was created."""
        if self.has_root(interface):
            return False
        self.init_qos(interface)
        if self.on_root_created:
            try:
                self.on_root_created(interface)
            except ProvisioningError as e:
                logger.warning(f"Post-root hook failed on {interface}: {e}")
        return True

    def ensure_ingress(self, interface: str) -> None:
        result = self.runner.run(commands.tc_show("qdisc", interface), check=False)
        if result.ok and _INGRESS_RE.search(result.stdout):
            return
        self._must(commands.tc_ingress_add(interface), f"add ingress qdisc on {interface}")

    # ------------------------------------------------------------------
    # Per-client objects
    # ------------------------------------------------------------------

    def _remove_objects(self, interface: str, ids: ClassIds) -> None:
        best_effort(self.runner, commands.tc_filter_del_prio(interface, DOWNLOAD_PARENT, ids.prio), expected=TC_CLEANUP)
        best_effort(self.runner, commands.tc_qdisc_del(interface, ids.download), expected=TC_CLEANUP)
        best_effort(self.runner, commands.tc_class_del(interface, ids.download), expected=TC_CLEANUP)
        best_effort(self.runner, commands.tc_filter_del_prio(interface, INGRESS_PARENT, ids.prio), expected=TC_CLEANUP)

    def _filters_for(self, interface: str, parent: str, ip: str) -> Dict[int, Optional[str]]:
        """Prefs under parent whose u32 match is exactly ip, with their flowid."""
        wanted = hex_address(ip)
        owned: Dict[int, Optional[str]] = {}
        pref, flowid = None, None
        for line in self._show("filter", interface, parent).splitlines():
            head = _PREF_RE.search(line)
            if head:
                pref = int(head.group(1))
                flow = _FLOWID_RE.search(line)
                flowid = flow.group(1) if flow else None
                continue
            match = _MATCH_RE.match(line)
            if match and pref is not None and match.group(1) == wanted:
                owned[pref] = flowid
        return owned

    def _remove_matching(self, interface: str, ip: str, ids: ClassIds) -> bool:
        removed = False
        download = self._filters_for(interface, DOWNLOAD_PARENT, ip)
        if ids.prio in download:
            best_effort(self.runner, commands.tc_filter_del_prio(interface, DOWNLOAD_PARENT, ids.prio),
                        expected=TC_CLEANUP)
            if download[ids.prio] == ids.download:
                best_effort(self.runner, commands.tc_qdisc_del(interface, ids.download), expected=TC_CLEANUP)
                best_effort(self.runner, commands.tc_class_del(interface, ids.download), expected=TC_CLEANUP)
            removed = True
        if ids.prio in self._filters_for(interface, INGRESS_PARENT, ip):
            best_effort(self.runner, commands.tc_filter_del_prio(interface, INGRESS_PARENT, ids.prio),
                        expected=TC_CLEANUP)
            removed = True
        return removed

    def set_limit(self, ip: str, download_mbps: float, upload_mbps: float,
                  interface: Optional[str] = None) -> Optional[str]:
        """
        Apply download/upload limits (Mbps, 0 = unlimited) for a client.

        Args:
            ip: Client address
            download_mbps: Download rate
            upload_mbps: Upload rate
            interface: Skip the route lookup

        Returns:
            Interface the limits were installed on, None if both were 0
        """
        ids = class_ids_for(ip)
        download = validate_rate_mbps(download_mbps)
        upload = validate_rate_mbps(upload_mbps)
        if download == 0 and upload == 0:
            self.remove_limit(ip)
            return None

        with self.rebuild_lock.shared(), self.locks.hold(ids.octet):
            iface = interface or self.inventory.route_interface(ip)
            if not iface:
                raise ProvisioningError(f"No route to {ip}; cannot apply limits")

            self.ensure_root(iface)
            self._remove_objects(iface, ids)
            self._settle()

            if download > 0:
                self._must(commands.tc_class_add(iface, ids.download, download, download),
                           f"add class {ids.download} on {iface}")
                self._must(commands.tc_leaf_add(iface, ids.download, ids.leaf, self.discipline, download),
                           f"add leaf {ids.leaf} on {iface}")
                self._must(commands.tc_filter_dst(iface, ids.prio, ip, ids.download),
                           f"add download filter for {ip}")

            if upload > 0:
                self.ensure_ingress(iface)
                burst = max(1, int(upload * self.config.qos.upload_burst_kb_per_mbit))
                self._must(commands.tc_filter_police_src(iface, ids.prio, ip, upload, burst),
                           f"add upload police for {ip}")

        logger.info(f"Limit {ip} on {iface}: down {download or 'unlimited'} / up {upload or 'unlimited'} Mbps")
        return iface

    def remove_limit(self, ip: str) -> List[str]:
        """
        Remove every tc object for a client.

        The routed interface is cleaned by identifier. Every other
        interface (VLANs first when the client is no longer routable, then
        all managed interfaces) is only cleaned where a u32 filter matches
        this exact address, since the same octet may belong to a client on
        another segment. Returns the interfaces touched.
        """
        ids = class_ids_for(ip)
        with self.rebuild_lock.shared(), self.locks.hold(ids.octet):
            iface = self.inventory.route_interface(ip)
            targets = [iface] if iface else self.inventory.vlan_interfaces()
            for name in self.inventory.managed_interfaces():
                if name not in targets:
                    targets.append(name)
            for name in targets:
                if name == iface:
                    self._remove_objects(name, ids)
                elif self._remove_matching(name, ip, ids):
                    logger.debug(f"Removed leftover tc objects for {ip} on {name}")
        logger.debug(f"Removed limits for {ip} from {len(targets)} interface(s)")
        return targets

    # ------------------------------------------------------------------
    # Inspection / sweeps
    # ------------------------------------------------------------------

    def _show(self, kind: str, interface: str, parent: Optional[str] = None) -> str:
        result = self.runner.run(commands.tc_show(kind, interface, parent), check=False)
        return result.stdout if result.ok else ""

    def list_objects(self, ip: str, interface: Optional[str] = None) -> Dict[str, List[str]]:
        """
        tc objects that exist for a client, as "<iface> <id>" strings.
        """
        ids = class_ids_for(ip)
        if interface:
            interfaces = [interface]
        else:
            routed = self.inventory.route_interface(ip)
            interfaces = [routed] if routed else self.inventory.managed_interfaces()

        found: Dict[str, List[str]] = {"classes": [], "qdiscs": [], "filters": []}
        for iface in interfaces:
            for classid in _CLASS_RE.findall(self._show("class", iface)):
                if classid == ids.download:
                    found["classes"].append(f"{iface} {classid}")
            for _kind, handle, parent in _QDISC_RE.findall(self._show("qdisc", iface)):
                if handle == ids.leaf or parent == ids.download:
                    found["qdiscs"].append(f"{iface} {handle}")
            for parent in (DOWNLOAD_PARENT, INGRESS_PARENT):
                prefs = {int(p) for p in _PREF_RE.findall(self._show("filter", iface, parent))}
                if ids.prio in prefs:
                    found["filters"].append(f"{iface} {parent} {ids.prio}")
        return found

    def client_octets(self, interface: str) -> Set[int]:
        """Octets with a per-client filter on an interface."""
        octets = set()
        for parent in (DOWNLOAD_PARENT, INGRESS_PARENT):
            for pref in _PREF_RE.findall(self._show("filter", interface, parent)):
                n = int(pref) - PRIO_BASE
                if 1 <= n <= 254:
                    octets.add(n)
        for classid in _CLASS_RE.findall(self._show("class", interface)):
            minor = classid.split(":", 1)[1]
            if len(minor) >= 2 and minor.endswith("0") and minor[:-1].isdigit():
                n = int(minor[:-1])
                if 1 <= n <= 254:
                    octets.add(n)
        return octets

    def sweep_stale(self, active_ips: Iterable[str]) -> int:
        """
        Remove per-client objects whose octet has no active session.

        Returns the number of (interface, client) pairs cleaned.
        """
        active = set()
        for ip in active_ips:
            try:
                active.add(class_ids_for(ip).octet)
            except ValueError:
                continue
        cleaned = 0
        with self.rebuild_lock.shared():
            for iface in self.inventory.managed_interfaces():
                for octet in sorted(self.client_octets(iface) - active):
                    ids = class_ids_for_octet(octet)
                    with self.locks.hold(octet):
                        self._remove_objects(iface, ids)
                    cleaned += 1
                    logger.info(f"Removed stale tc objects for octet {octet} on {iface}")
        return cleaned
