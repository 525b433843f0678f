"""
PisoGate Data Model
===================

Dataclasses for the persisted declarative rows plus the live Interface
view. Each row type converts to and from the plain dict the row store
deals in.

Author: Team PisoGate
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

INTERFACE_KINDS = ("ethernet", "wifi", "bridge", "vlan", "loopback")

DEFAULT_NETMASK = "255.255.255.0"


def _flag(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _json_list(value: Any) -> list:
    if value is None or value == "":
        return []
    if isinstance(value, str):
        return list(json.loads(value))
    return list(value)


def _num(value: Any, default: float = 0) -> float:
    if value is None or value == "":
        return default
    return float(value)


@dataclass
class Interface:
    """Live network interface, derived on every call and never persisted."""
    name: str
    kind: str = "ethernet"
    oper_state: str = "down"
    address: Optional[str] = None
    hardware_address: Optional[str] = None
    master: Optional[str] = None

    @property
    def is_up(self) -> bool:
        return self.oper_state == "up"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "oper_state": self.oper_state,
            "address": self.address,
            "hardware_address": self.hardware_address,
            "master": self.master,
        }


@dataclass
class VlanBinding:
    name: str
    parent: str
    vlan_id: int

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "VlanBinding":
        return cls(name=row["name"], parent=row["parent"], vlan_id=int(row["vlan_id"]))

    def to_row(self) -> Dict[str, Any]:
        return {"name": self.name, "parent": self.parent, "vlan_id": self.vlan_id}


@dataclass
class BridgeBinding:
    name: str
    members: List[str] = field(default_factory=list)
    stp: bool = False

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "BridgeBinding":
        return cls(name=row["name"], members=_json_list(row.get("members")), stp=_flag(row.get("stp")))

    def to_row(self) -> Dict[str, Any]:
        return {"name": self.name, "members": json.dumps(self.members), "stp": int(self.stp)}


@dataclass
class HotspotSegment:
    interface: str
    ip_address: str
    dhcp_range: Tuple[str, str]
    netmask: str = DEFAULT_NETMASK
    enabled: bool = True

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "HotspotSegment":
        raw = row.get("dhcp_range") or ""
        if isinstance(raw, str):
            parts = [p.strip() for p in raw.split(",") if p.strip()]
        else:
            parts = list(raw)
        if len(parts) < 2:
            raise ValueError(f"Hotspot {row.get('interface')} has malformed dhcp_range {raw!r}")
        return cls(
            interface=row["interface"],
            ip_address=row["ip_address"],
            dhcp_range=(parts[0], parts[1]),
            netmask=row.get("netmask") or DEFAULT_NETMASK,
            enabled=_flag(row.get("enabled"), True),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "interface": self.interface,
            "ip_address": self.ip_address,
            "dhcp_range": f"{self.dhcp_range[0]},{self.dhcp_range[1]}",
            "netmask": self.netmask,
            "enabled": int(self.enabled),
        }


@dataclass
class WirelessAP:
    interface: str
    ssid: str
    passphrase: str = ""
    bridge: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "WirelessAP":
        return cls(interface=row["interface"], ssid=row["ssid"],
                   passphrase=row.get("password") or row.get("passphrase") or "",
                   bridge=row.get("bridge") or None)

    def to_row(self) -> Dict[str, Any]:
        return {"interface": self.interface, "ssid": self.ssid,
                "password": self.passphrase, "bridge": self.bridge}


@dataclass
class ClientSession:
    mac: str
    ip: Optional[str] = None
    remaining_seconds: int = 0
    total_paid: float = 0
    is_paused: bool = False
    download_limit: float = 0
    upload_limit: float = 0
    token: Optional[str] = None
    updated_at: Optional[str] = None
    expired_at: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.remaining_seconds > 0 and not self.is_paused and not self.expired_at

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ClientSession":
        return cls(
            mac=row["mac"],
            ip=row.get("ip"),
            remaining_seconds=int(row.get("remaining_seconds") or 0),
            total_paid=_num(row.get("total_paid")),
            is_paused=_flag(row.get("is_paused")),
            download_limit=_num(row.get("download_limit")),
            upload_limit=_num(row.get("upload_limit")),
            token=row.get("token"),
            updated_at=row.get("updated_at"),
            expired_at=row.get("expired_at"),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "mac": self.mac, "ip": self.ip, "remaining_seconds": self.remaining_seconds,
            "total_paid": self.total_paid, "is_paused": int(self.is_paused),
            "download_limit": self.download_limit, "upload_limit": self.upload_limit,
            "token": self.token, "updated_at": self.updated_at, "expired_at": self.expired_at,
        }


@dataclass
class DeviceRecord:
    """Per-device override; a limit of 0 means no override."""
    mac: str
    ip: Optional[str] = None
    interface: Optional[str] = None
    download_limit: float = 0
    upload_limit: float = 0
    last_seen: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DeviceRecord":
        return cls(mac=row["mac"], ip=row.get("ip"), interface=row.get("interface"),
                   download_limit=_num(row.get("download_limit")),
                   upload_limit=_num(row.get("upload_limit")),
                   last_seen=row.get("last_seen"))

    def to_row(self) -> Dict[str, Any]:
        return {"mac": self.mac, "ip": self.ip, "interface": self.interface,
                "download_limit": self.download_limit, "upload_limit": self.upload_limit,
                "last_seen": self.last_seen}


@dataclass
class GamingRule:
    id: int
    name: str
    protocol: str
    port_start: int
    port_end: int
    enabled: bool = True

    @property
    def protocols(self) -> List[str]:
        return ["tcp", "udp"] if self.protocol == "both" else [self.protocol]

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "GamingRule":
        return cls(id=int(row["id"]), name=row.get("name") or "", protocol=str(row["protocol"]).lower(),
                   port_start=int(row["port_start"]), port_end=int(row["port_end"]),
                   enabled=_flag(row.get("enabled"), True))

    def to_row(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "protocol": self.protocol,
                "port_start": self.port_start, "port_end": self.port_end, "enabled": int(self.enabled)}


@dataclass
class PPPoEServerConfig:
    interface: str
    local_ip: str
    ip_pool_start: str
    ip_pool_end: str
    dns1: str = "8.8.8.8"
    dns2: str = "8.8.4.4"
    service_name: str = ""
    enabled: bool = True

    @property
    def pool_size(self) -> int:
        start = int(self.ip_pool_start.rsplit(".", 1)[1])
        end = int(self.ip_pool_end.rsplit(".", 1)[1])
        return max(1, end - start + 1)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PPPoEServerConfig":
        return cls(interface=row["interface"], local_ip=row["local_ip"],
                   ip_pool_start=row["ip_pool_start"], ip_pool_end=row["ip_pool_end"],
                   dns1=row.get("dns1") or "8.8.8.8", dns2=row.get("dns2") or "8.8.4.4",
                   service_name=row.get("service_name") or "",
                   enabled=_flag(row.get("enabled"), True))

    def to_row(self) -> Dict[str, Any]:
        return {"interface": self.interface, "local_ip": self.local_ip,
                "ip_pool_start": self.ip_pool_start, "ip_pool_end": self.ip_pool_end,
                "dns1": self.dns1, "dns2": self.dns2, "service_name": self.service_name,
                "enabled": int(self.enabled)}


@dataclass
class PPPoEUser:
    username: str
    password: str
    enabled: bool = True

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PPPoEUser":
        return cls(username=row["username"], password=row["password"], enabled=_flag(row.get("enabled"), True))

    def to_row(self) -> Dict[str, Any]:
        return {"username": self.username, "password": self.password, "enabled": int(self.enabled)}


@dataclass
class WanLink:
    interface: str
    gateway: str
    weight: int = 1


@dataclass
class MultiWanConfig:
    enabled: bool = False
    mode: str = "pcc"
    pcc_method: str = "both_addresses"
    interfaces: List[WanLink] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "MultiWanConfig":
        links = [WanLink(interface=i["interface"], gateway=i["gateway"], weight=int(i.get("weight") or 1))
                 for i in _json_list(row.get("interfaces"))]
        return cls(enabled=_flag(row.get("enabled")), mode=row.get("mode") or "pcc",
                   pcc_method=row.get("pcc_method") or "both_addresses", interfaces=links)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": 1,
            "enabled": int(self.enabled),
            "mode": self.mode,
            "pcc_method": self.pcc_method,
            "interfaces": json.dumps([{"interface": l.interface, "gateway": l.gateway, "weight": l.weight}
                                      for l in self.interfaces]),
        }


@dataclass
class Classification:
    wan: str
    lan_members: List[str] = field(default_factory=list)
