"""
PisoGate Input Validation
=========================

Every value that ends up in an external command or a generated daemon
config passes through one of these checks first.
"""

import ipaddress
import re
from typing import Optional, Tuple, Union

from .errors import ValidationError

IFNAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,14}$")
IFNAME_PATTERN_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,13}\+?$")
MAC_RE = re.compile(r"^[0-9A-Fa-f]{2}(:[0-9A-Fa-f]{2}){5}$")
CREDENTIAL_RE = re.compile(r'^[^"\s\\]{1,64}$')

PROTOCOLS = ("tcp", "udp", "both")
QDISC_DISCIPLINES = ("cake", "fq_codel", "sfq", "pfifo")

IFNAMSIZ = 15
IP_PLACEHOLDERS = ("AUTO", "UNKNOWN", "NONE", "N/A", "-")


def validate_ifname(name: str) -> str:
    """Linux interface name: 1-15 chars, no whitespace or slashes."""
    if not isinstance(name, str) or not IFNAME_RE.match(name) or name in (".", ".."):
        raise ValidationError(f"Invalid interface name: {name!r}")
    return name


def validate_ifname_pattern(pattern: str) -> str:
    """Interface name or iptables wildcard such as ppp+."""
    if not isinstance(pattern, str) or not IFNAME_PATTERN_RE.match(pattern):
        raise ValidationError(f"Invalid interface pattern: {pattern!r}")
    return pattern


def validate_ipv4(address: str) -> str:
    try:
        return str(ipaddress.IPv4Address(str(address).strip()))
    except (ipaddress.AddressValueError, ValueError):
        raise ValidationError(f"Invalid IPv4 address: {address!r}")


def validate_host_ipv4(address: str) -> str:
    """IPv4 whose last octet can key a traffic class (1-254)."""
    addr = validate_ipv4(address)
    octet = int(addr.rsplit(".", 1)[1])
    if octet < 1 or octet > 254:
        raise ValidationError(f"Address {addr} cannot key a client class (last octet {octet})")
    return addr


def client_ipv4(address: Optional[str]) -> Optional[str]:
    """
    Client address as reported by the portal.

    Empty values and placeholders such as AUTO/unknown mean "not known
    yet" and give None; anything else must be a usable host address.
    """
    if not address or str(address).strip().upper() in IP_PLACEHOLDERS:
        return None
    return validate_host_ipv4(address)


def validate_netmask(netmask: str) -> int:
    """Returns the prefix length for a dotted netmask."""
    try:
        return ipaddress.IPv4Network(f"0.0.0.0/{netmask}").prefixlen
    except (ipaddress.NetmaskValueError, ValueError):
        raise ValidationError(f"Invalid netmask: {netmask!r}")


def validate_network(cidr: str) -> ipaddress.IPv4Network:
    try:
        return ipaddress.IPv4Network(str(cidr), strict=False)
    except (ipaddress.AddressValueError, ipaddress.NetmaskValueError, ValueError):
        raise ValidationError(f"Invalid network: {cidr!r}")


def validate_mac(mac: str) -> str:
    """Normalizes to upper-case colon form."""
    if not isinstance(mac, str) or not MAC_RE.match(mac.strip()):
        raise ValidationError(f"Invalid hardware address: {mac!r}")
    return mac.strip().upper()


def validate_vlan_id(vlan_id: Union[int, str]) -> int:
    try:
        value = int(vlan_id)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid VLAN id: {vlan_id!r}")
    if value < 0 or value > 4094:
        raise ValidationError(f"VLAN id out of range 0-4094: {value}")
    return value


def validate_port(port: Union[int, str]) -> int:
    try:
        value = int(port)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid port: {port!r}")
    if value < 1 or value > 65535:
        raise ValidationError(f"Port out of range 1-65535: {value}")
    return value


def validate_port_range(start: Union[int, str], end: Union[int, str]) -> Tuple[int, int]:
    first, last = validate_port(start), validate_port(end)
    if first > last:
        raise ValidationError(f"Port range start {first} is above end {last}")
    return first, last


def validate_protocol(protocol: str) -> str:
    value = str(protocol).lower()
    if value not in PROTOCOLS:
        raise ValidationError(f"Invalid protocol: {protocol!r} (expected one of {PROTOCOLS})")
    return value


def validate_rate_mbps(rate: Union[int, float, str], allow_zero: bool = True) -> float:
    try:
        value = float(rate)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid rate: {rate!r}")
    if value < 0 or (value == 0 and not allow_zero) or value > 100000:
        raise ValidationError(f"Rate out of range: {rate!r}")
    return value


def validate_percentage(value: Union[int, str]) -> int:
    try:
        pct = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid percentage: {value!r}")
    if pct < 1 or pct > 100:
        raise ValidationError(f"Percentage out of range 1-100: {pct}")
    return pct


def validate_discipline(name: str) -> str:
    if name not in QDISC_DISCIPLINES:
        raise ValidationError(f"Unsupported queue discipline: {name!r}")
    return name


def validate_config_text(value: str, field: str, max_len: int = 64) -> str:
    """Free text that is written into a daemon config line."""
    text = "" if value is None else str(value)
    if len(text) > max_len or any(ch in text for ch in "\r\n\x00"):
        raise ValidationError(f"Invalid {field}: {value!r}")
    return text


def validate_ssid(ssid: str) -> str:
    text = validate_config_text(ssid, "SSID", max_len=32)
    if not text or len(text.encode("utf-8")) > 32:
        raise ValidationError(f"Invalid SSID: {ssid!r}")
    return text


def validate_passphrase(passphrase: Optional[str]) -> str:
    """Empty means an open network; otherwise WPA2 needs 8-63 chars."""
    text = validate_config_text(passphrase or "", "passphrase", max_len=63)
    if text and len(text) < 8:
        raise ValidationError("WPA2 passphrase must be 8-63 characters")
    return text


def validate_credential(value: str, field: str) -> str:
    """PPP secrets are double-quoted, so no quotes, whitespace or backslashes."""
    if not isinstance(value, str) or not CREDENTIAL_RE.match(value):
        raise ValidationError(f"Invalid PPPoE {field}: {value!r}")
    return value
