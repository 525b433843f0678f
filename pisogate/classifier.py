"""
PisoGate Topology Classifier
============================

Decides which interface faces the upstream network (WAN) and which ones
serve clients (LAN). Pure functions over an Interface list.

WAN priority:
1. Ethernet interface holding an address outside the appliance LAN block
2. First ethernet interface that is up, preferring onboard names (en*, eth0)
3. Onboard name heuristic, then first ethernet, then "eth0"

Author: Team PisoGate
"""

import ipaddress
from typing import List, Optional, Sequence

from .models import Classification, Interface

DEFAULT_LAN_NETWORK = "10.0.0.0/24"
DEFAULT_WAN = "eth0"
DEFAULT_LAN = "wlan0"


def _is_onboard(name: str) -> bool:
    return name.startswith("en") or name.startswith("eth0")


def _outside(address: Optional[str], network: ipaddress.IPv4Network) -> bool:
    if not address:
        return False
    try:
        return ipaddress.IPv4Address(address) not in network
    except ValueError:
        return False


def select_wan(interfaces: Sequence[Interface], lan_network: str = DEFAULT_LAN_NETWORK) -> str:
    network = ipaddress.IPv4Network(lan_network, strict=False)
    ethernet = [i for i in interfaces if i.kind == "ethernet"]

    upstream = next((i for i in ethernet if _outside(i.address, network)), None)
    if upstream:
        return upstream.name

    active = [i for i in ethernet if i.is_up]
    if active:
        onboard = next((i for i in active if _is_onboard(i.name)), None)
        return (onboard or active[0]).name

    heuristic = next((i for i in ethernet if i.name.startswith("en") or i.name == "eth0"), None)
    if heuristic:
        return heuristic.name
    return ethernet[0].name if ethernet else DEFAULT_WAN


def classify_interfaces(interfaces: Sequence[Interface],
                        lan_network: str = DEFAULT_LAN_NETWORK) -> Classification:
    """
    Split interfaces into a WAN name and ordered LAN members.

    LAN members are the primary wifi radio (wlan0 when present) followed by
    every ethernet interface other than the WAN. The WAN is never a LAN
    member and no member appears twice.
    """
    wan = select_wan(interfaces, lan_network)

    members: List[str] = []
    wifi = [i for i in interfaces if i.kind == "wifi"]
    primary = next((i for i in wifi if i.name == "wlan0"), wifi[0] if wifi else None)
    if primary and primary.name != wan:
        members.append(primary.name)

    for iface in interfaces:
        if iface.kind == "ethernet" and iface.name != wan and iface.name not in members:
            members.append(iface.name)

    return Classification(wan=wan, lan_members=members)


def elect_lan_interface(interfaces: Sequence[Interface]) -> str:
    """Client-facing interface for the firewall: up bridge, else first wifi, else wlan0."""
    bridge = next((i for i in interfaces if i.kind == "bridge" and i.is_up), None)
    if bridge:
        return bridge.name
    wifi = next((i for i in interfaces if i.kind == "wifi"), None)
    return wifi.name if wifi else DEFAULT_LAN
