#!/usr/bin/env python3
"""
PisoGate Topology Provisioner
=============================

Creates and removes the virtual topology the hotspot runs on:

- 802.1Q VLAN sub-interfaces with collision-safe names
- Linux bridges and their members
- Captive-portal segments (address, DHCP fragment, port-80 redirect)
- hostapd access points
- First-boot auto-provisioning of the default layout

Every create is idempotent: "File exists" from the kernel means the
object is already there.

Author: Team PisoGate
"""

import zlib
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from loguru import logger

from . import commands
from .classifier import classify_interfaces
from .errors import CommandError, ProvisioningError, ValidationError
from .models import BridgeBinding, HotspotSegment, VlanBinding, WirelessAP
from .runner import best_effort, classify_failure, delete_until_absent
from .validation import (
    IFNAMSIZ,
    validate_host_ipv4,
    validate_ifname,
    validate_netmask,
    validate_passphrase,
    validate_ssid,
    validate_vlan_id,
)


def derive_vlan_name(parent: str, vlan_id: int, taken: Optional[Dict[str, str]] = None) -> str:
    """
    Kernel name for a VLAN sub-interface, at most 15 characters.

    Args:
        parent: Parent interface; any existing ".N" suffix is stripped
        vlan_id: 802.1Q id
        taken: Already-bound names mapped to their parent interface

    Returns:
        "<base>.<id>", the base truncated to fit; when that name is bound
        to a different parent, the base tail is replaced with a 2-hex-digit
        CRC of the full parent name; "v<id>" when nothing fits.
    """
    vlan_id = validate_vlan_id(vlan_id)
    taken = taken or {}
    base = parent.split(".")[0]
    suffix = f".{vlan_id}"
    allowed = IFNAMSIZ - len(suffix)
    if allowed <= 0:
        return f"v{vlan_id}"

    candidate = f"{base[:allowed]}{suffix}"
    if taken.get(candidate, parent) == parent:
        return candidate

    crc = f"{zlib.crc32(parent.encode()) & 0xff:02x}"
    keep = min(len(base), allowed - len(crc))
    if keep < 1:
        return f"v{vlan_id}"
    hashed = f"{base[:keep]}{crc}{suffix}"
    if taken.get(hashed, parent) == parent:
        return hashed
    return f"v{vlan_id}"


def render_dnsmasq_fragment(interface: str, ip_address: str, dhcp_start: str, dhcp_end: str) -> str:
    return (
        f"interface={interface}\n"
        f"bind-dynamic\n"
        f"dhcp-range={dhcp_start},{dhcp_end},12h\n"
        f"dhcp-option=3,{ip_address}\n"
        f"dhcp-option=6,{ip_address}\n"
        f"dhcp-authoritative\n"
        f"address=/#/{ip_address}\n"
    )


def render_hostapd_config(ap: WirelessAP, channel: int = 1) -> str:
    lines = [f"interface={ap.interface}"]
    if ap.bridge:
        lines.append(f"bridge={ap.bridge}")
    lines += [
        "driver=nl80211",
        f"ssid={ap.ssid}",
        "hw_mode=g",
        f"channel={channel}",
        "wmm_enabled=0",
        "macaddr_acl=0",
        "auth_algs=1",
        "ignore_broadcast_ssid=0",
    ]
    if ap.passphrase:
        lines += [
            "wpa=2",
            f"wpa_passphrase={ap.passphrase}",
            "wpa_key_mgmt=WPA-PSK",
            "wpa_pairwise=TKIP",
            "rsn_pairwise=CCMP",
        ]
    return "\n".join(lines) + "\n"


class TopologyProvisioner:
    """
    Drives ip/iptables/dnsmasq/hostapd to materialize topology rows.

    Mutations of the same interface are serialized through `locks`.
    """

    def __init__(self, runner, inventory, store, config, locks):
        self.runner = runner
        self.inventory = inventory
        self.store = store
        self.config = config
        self.locks = locks

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _create(self, argv: List[str], what: str) -> bool:
        """Run a creation command; False if the object already existed."""
        result = self.runner.run(argv, check=False)
        if result.ok:
            return True
        if classify_failure(result) == "file_exists":
            logger.debug(f"{what} already exists")
            return False
        raise ProvisioningError(f"Failed to create {what}: {result.output or result.returncode}",
                                CommandError(result.argv, result.returncode, result.stdout, result.stderr,
                                             result.timed_out))

    def _must(self, argv: List[str], what: str) -> None:
        try:
            self.runner.run(argv, check=True)
        except CommandError as e:
            raise ProvisioningError(f"Failed to {what}: {e}", e) from e

    def _portal_redirect(self, interface: str) -> List[str]:
        port = self.config.firewall.portal_port
        return commands.redirect_rule(interface, "tcp", 80, port)

    def _fragment_path(self, interface: str) -> Path:
        return Path(self.config.paths.dnsmasq_dir) / f"ajc_{interface}.conf"

    def _hostapd_path(self, interface: str) -> Path:
        return Path(self.config.paths.hostapd_dir) / f"hostapd_{interface}.conf"

    def taken_vlan_names(self) -> Dict[str, str]:
        return {row["name"]: row["parent"] for row in self.store.list("vlans")}

    # ------------------------------------------------------------------
    # VLANs
    # ------------------------------------------------------------------

    def create_vlan(self, parent: str, vlan_id: int, name: Optional[str] = None,
                    persist: bool = True) -> VlanBinding:
        """
        Create (or confirm) a VLAN sub-interface and bring it up.

        Args:
            parent: Parent interface
            vlan_id: 802.1Q id
            name: Persisted name to reuse; derived when omitted
            persist: Record the binding in the store

        Returns:
            The VlanBinding that now exists
        """
        validate_ifname(parent)
        vlan_id = validate_vlan_id(vlan_id)
        if not name:
            taken = self.taken_vlan_names()
            name = derive_vlan_name(parent, vlan_id, taken)
        validate_ifname(name)

        with self.locks.hold(name):
            created = self._create(commands.ip_link_add_vlan(parent, name, vlan_id), f"VLAN {name}")
            self._must(commands.ip_link_set_state(name, True), f"bring up {name}")

        binding = VlanBinding(name=name, parent=parent, vlan_id=vlan_id)
        if persist:
            self.store.upsert("vlans", binding.to_row())
        logger.info(f"VLAN {name} on {parent} id {vlan_id} {'created' if created else 'present'}")
        return binding

    def delete_vlan(self, name: str, persist: bool = True) -> bool:
        validate_ifname(name)
        with self.locks.hold(name):
            removed = best_effort(self.runner, commands.ip_link_delete(name), expected=["no_such_device"])
        if persist:
            self.store.delete("vlans", name)
        logger.info(f"VLAN {name} deleted")
        return removed

    # ------------------------------------------------------------------
    # Bridges
    # ------------------------------------------------------------------

    def check_bridge_members(self, name: str, members: Sequence[str]) -> None:
        """A member may belong to only one persisted bridge."""
        for row in self.store.list("bridges"):
            other = BridgeBinding.from_row(row)
            if other.name == name:
                continue
            clash = [m for m in members if m in other.members]
            if clash:
                raise ValidationError(f"{', '.join(clash)} already member(s) of bridge {other.name}")

    def create_bridge(self, name: str, members: Sequence[str], stp: bool = False,
                      persist: bool = True) -> BridgeBinding:
        """
        Create a bridge, enslave members (down, attach, up) and bring it up.
        """
        validate_ifname(name)
        ordered: List[str] = []
        for member in members:
            validate_ifname(member)
            if member == name:
                raise ValidationError(f"Bridge {name} cannot contain itself")
            if member not in ordered:
                ordered.append(member)
        self.check_bridge_members(name, ordered)

        with self.locks.hold(name):
            created = self._create(commands.ip_link_add_bridge(name, stp), f"bridge {name}")
            if not created:
                best_effort(self.runner, commands.ip_link_set_bridge_stp(name, stp))
            for member in ordered:
                with self.locks.hold(member):
                    best_effort(self.runner, commands.ip_link_set_state(member, False))
                    self._must(commands.ip_link_set_master(member, name), f"attach {member} to {name}")
                    best_effort(self.runner, commands.ip_link_set_state(member, True))
            self._must(commands.ip_link_set_state(name, True), f"bring up {name}")

        binding = BridgeBinding(name=name, members=ordered, stp=stp)
        if persist:
            self.store.upsert("bridges", binding.to_row())
        logger.info(f"Bridge {name} active with members: {', '.join(ordered) or '-'}")
        return binding

    def delete_bridge(self, name: str, persist: bool = True) -> bool:
        validate_ifname(name)
        row = self.store.get("bridges", name)
        members = BridgeBinding.from_row(row).members if row else []
        with self.locks.hold(name):
            for member in members:
                best_effort(self.runner, commands.ip_link_set_nomaster(member))
            best_effort(self.runner, commands.ip_link_set_state(name, False), expected=["no_such_device"])
            removed = best_effort(self.runner, commands.ip_link_delete(name), expected=["no_such_device"])
        if persist:
            self.store.delete("bridges", name)
        logger.info(f"Bridge {name} deleted")
        return removed

    # ------------------------------------------------------------------
    # Hotspot segments
    # ------------------------------------------------------------------

    def segment_interface(self, interface: str) -> str:
        """Interface that actually carries a segment: the bridge master if enslaved."""
        return self.inventory.link_master(interface) or interface

    def setup_hotspot_segment(self, segment: HotspotSegment, restart: bool = True,
                              persist: bool = True) -> str:
        """
        Address an interface, write its DHCP fragment and add the portal redirect.

        Returns the interface the segment was configured on.
        """
        requested = validate_ifname(segment.interface)
        address = validate_host_ipv4(segment.ip_address)
        prefix = validate_netmask(segment.netmask)
        dhcp_start = validate_host_ipv4(segment.dhcp_range[0])
        dhcp_end = validate_host_ipv4(segment.dhcp_range[1])

        with self.locks.hold(requested):
            target = requested
            master = self.inventory.link_master(requested)
            if master:
                logger.info(f"Interface {requested} is bridged to {master}; configuring the bridge")
                best_effort(self.runner, commands.ip_addr_flush(requested))
                target = master

            self._must(commands.ip_link_set_state(target, True), f"bring up {target}")
            self._must(commands.ip_addr_flush(target), f"flush {target}")
            self._must(commands.ip_addr_add(address, prefix, target), f"address {target}")

            redirect = self._portal_redirect(target)
            delete_until_absent(self.runner, commands.ipt_delete("PREROUTING", redirect, table="nat"))
            self._must(commands.ipt_append("PREROUTING", redirect, table="nat"), f"redirect portal on {target}")

            path = self._fragment_path(target)
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(render_dnsmasq_fragment(target, address, dhcp_start, dhcp_end))
            except OSError as e:
                raise ProvisioningError(f"Cannot write {path}: {e}", e) from e

        if persist:
            self.store.upsert("hotspots", segment.to_row())
        if restart:
            self.restart_dhcp_service()
        logger.info(f"Hotspot segment live on {target} ({address}/{prefix})")
        return target

    def remove_hotspot_segment(self, interface: str, restart: bool = True, persist: bool = True) -> None:
        validate_ifname(interface)
        with self.locks.hold(interface):
            targets = [interface]
            master = self.inventory.link_master(interface)
            if master:
                targets.insert(0, master)
            for target in targets:
                path = self._fragment_path(target)
                if path.exists():
                    path.unlink()
                delete_until_absent(self.runner,
                                    commands.ipt_delete("PREROUTING", self._portal_redirect(target), table="nat"))
        if persist:
            self.store.delete("hotspots", interface)
        if restart:
            self.restart_dhcp_service()
        logger.info(f"Hotspot segment removed from {interface}")

    def restart_dhcp_service(self) -> None:
        """Validate and restart dnsmasq (a reload does not pick up new interfaces)."""
        test = self.runner.run(commands.dnsmasq_test(), check=False)
        if not test.ok:
            logger.error(f"dnsmasq configuration test failed: {test.output}")
        try:
            self.runner.run(commands.systemctl("restart", self.config.provisioning.dhcp_service), check=True)
        except CommandError as e:
            raise ProvisioningError(f"Failed to restart {self.config.provisioning.dhcp_service}: {e}", e) from e
        logger.info(f"{self.config.provisioning.dhcp_service} restarted")

    # ------------------------------------------------------------------
    # Wireless access points
    # ------------------------------------------------------------------

    def configure_wireless_ap(self, ap: WirelessAP, persist: bool = True) -> bool:
        """
        Write the hostapd config for a radio and (re)start it when needed.

        Returns True if hostapd was (re)started.
        """
        validate_ifname(ap.interface)
        ap.ssid = validate_ssid(ap.ssid)
        ap.passphrase = validate_passphrase(ap.passphrase)
        if ap.bridge:
            validate_ifname(ap.bridge)

        content = render_hostapd_config(ap, self.config.provisioning.hostapd_channel)
        path = self._hostapd_path(ap.interface)
        launch = f"hostapd -B {path}"

        with self.locks.hold(ap.interface):
            best_effort(self.runner, commands.ip_link_set_state(ap.interface, True))
            restart = True
            if path.exists() and path.read_text() == content:
                if self.runner.run(commands.pgrep_full(launch), check=False).ok:
                    logger.info(f"hostapd already running with current config on {ap.interface}")
                    restart = False

            if restart:
                try:
                    path.parent.mkdir(parents=True, exist_ok=True)
                    path.write_text(content)
                except OSError as e:
                    raise ProvisioningError(f"Cannot write {path}: {e}", e) from e
                best_effort(self.runner, commands.systemctl("stop", "hostapd"))
                best_effort(self.runner, commands.pkill_full(launch), expected=["no_such_process"])
                self._must(commands.hostapd_start(str(path)), f"start hostapd on {ap.interface}")
                logger.info(f"Broadcast started on {ap.interface}: {ap.ssid}")

        if persist:
            self.store.upsert("wireless_settings", ap.to_row())
        return restart

    # ------------------------------------------------------------------
    # First boot
    # ------------------------------------------------------------------

    def auto_provision(self) -> List[str]:
        """
        Create the default layout when the store has none.

        WAN VLAN segments are created live; the LAN bridge, its segment and
        the default AP are recorded as rows for the reconciler to start.

        Returns a list of what was provisioned.
        """
        done: List[str] = []
        settings = self.config.provisioning
        interfaces = self.inventory.list_interfaces()
        classification = classify_interfaces(interfaces, self.config.network.lan_network)
        wan = self.config.network.wan_interface or classification.wan

        for vlan in settings.wan_vlans:
            try:
                vlan_id = validate_vlan_id(vlan["id"])
                address = validate_host_ipv4(vlan["ip"])
                name = derive_vlan_name(wan, vlan_id, self.taken_vlan_names())
                if self.store.get("vlans", name):
                    logger.debug(f"VLAN {name} already configured, skipping")
                    continue
                binding = self.create_vlan(wan, vlan_id, name=name)
                best_effort(self.runner, commands.ip_link_set_nomaster(binding.name))
                prefix = address.rsplit(".", 1)[0]
                segment = HotspotSegment(interface=binding.name, ip_address=address,
                                         dhcp_range=(f"{prefix}.50", f"{prefix}.250"))
                self.store.upsert("hotspots", segment.to_row())
                done.append(f"vlan:{binding.name}")
            except (ProvisioningError, ValidationError, KeyError) as e:
                logger.error(f"Failed to provision VLAN {vlan}: {e}")

        members = [m for m in classification.lan_members if m != wan]
        logger.info(f"Auto-provision: WAN={wan}, LAN candidates=[{', '.join(members)}]")
        if not members:
            logger.warning("No LAN interfaces found for auto-provisioning")
            return done

        bridge = settings.bridge_name
        if self.store.get("bridges", bridge) is None:
            try:
                self.check_bridge_members(bridge, members)
                self.store.upsert("bridges", BridgeBinding(name=bridge, members=members).to_row())
                self.store.upsert("hotspots", HotspotSegment(
                    interface=bridge, ip_address=settings.bridge_ip,
                    dhcp_range=(settings.dhcp_range_start, settings.dhcp_range_end)).to_row())
                done.append(f"bridge:{bridge}")
            except ValidationError as e:
                logger.error(f"Cannot provision bridge {bridge}: {e}")

        wifi = next((i.name for i in interfaces if i.kind == "wifi" and i.name in members), None)
        if wifi:
            existing = self.store.get("wireless_settings", wifi)
            ap = WirelessAP.from_row(existing) if existing else WirelessAP(interface=wifi, ssid=settings.default_ssid)
            ap.bridge = bridge
            self.store.upsert("wireless_settings", ap.to_row())
            done.append(f"ap:{wifi}")

        logger.info(f"Auto-provisioning recorded: {done or 'nothing new'}")
        return done
