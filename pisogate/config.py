"""
PisoGate Configuration
======================

Static engine settings loaded from config/config.yaml. Runtime knobs the
admin console edits (default limits, QoS discipline, gaming priority)
live in the row store's config table instead.

Author: Team PisoGate
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from loguru import logger

PUBLIC_RESOLVERS = ["8.8.8.8", "8.8.4.4", "1.1.1.1", "1.0.0.1", "9.9.9.9"]
PPPOE_MODULES = ["pppoe", "ppp_mppe", "ppp_async", "ppp_generic"]


@dataclass
class NetworkSettings:
    """Interface roles and the appliance LAN block"""
    lan_network: str = "10.0.0.0/24"
    wan_interface: Optional[str] = None  # None = classify automatically
    lan_interface: Optional[str] = None


@dataclass
class FirewallSettings:
    """Captive-portal gate"""
    portal_port: int = 80
    local_dns_port: int = 53
    trusted_dns: str = "8.8.8.8"
    # Deterrent against hard-coded resolvers, not a security boundary
    blocked_resolvers: List[str] = field(default_factory=lambda: list(PUBLIC_RESOLVERS))
    mss_clamp: bool = True


@dataclass
class QoSSettings:
    """Traffic control"""
    discipline: str = "cake"
    root_rate_mbps: int = 1000
    upload_burst_kb_per_mbit: int = 128
    settle_seconds: float = 0.1
    default_download_mbps: float = 5
    default_upload_mbps: float = 5


@dataclass
class PathSettings:
    """Generated files and daemon logs"""
    database: str = "data/pisogate.db"
    dnsmasq_dir: str = "/etc/dnsmasq.d"
    hostapd_dir: str = "/etc/hostapd"
    ppp_dir: str = "/etc/ppp"
    pppd_log: str = "/var/log/pppd.log"
    pppoe_log: str = "/var/log/pppoe-server.log"
    run_dir: str = "/var/run"
    lock_dir: str = "/var/lock"


@dataclass
class PPPoESettings:
    """PPPoE termination"""
    start_grace_seconds: float = 2.0
    stop_settle_seconds: float = 1.0
    sysfs_net: str = "/sys/class/net"
    kernel_modules: List[str] = field(default_factory=lambda: list(PPPOE_MODULES))
    mtu: int = 1492
    tail_log: bool = True


@dataclass
class ProvisioningSettings:
    """First-boot topology"""
    auto_provision: bool = True
    wan_vlans: List[Dict[str, Any]] = field(default_factory=lambda: [
        {"id": 13, "ip": "10.0.13.1"},
        {"id": 22, "ip": "10.0.22.1"},
    ])
    bridge_name: str = "br0"
    bridge_ip: str = "10.0.0.1"
    dhcp_range_start: str = "10.0.0.50"
    dhcp_range_end: str = "10.0.0.250"
    default_ssid: str = "AJC_PisoWifi_Hotspot"
    dhcp_service: str = "dnsmasq"
    hostapd_channel: int = 1


@dataclass
class CommandSettings:
    """External command execution"""
    timeout: float = 30.0


@dataclass
class EngineConfig:
    network: NetworkSettings = field(default_factory=NetworkSettings)
    firewall: FirewallSettings = field(default_factory=FirewallSettings)
    qos: QoSSettings = field(default_factory=QoSSettings)
    paths: PathSettings = field(default_factory=PathSettings)
    pppoe: PPPoESettings = field(default_factory=PPPoESettings)
    provisioning: ProvisioningSettings = field(default_factory=ProvisioningSettings)
    commands: CommandSettings = field(default_factory=CommandSettings)


def _section(cls, data: Optional[Dict[str, Any]]):
    """Build a settings dataclass, ignoring unknown keys with a warning."""
    data = data or {}
    known = set(cls.__dataclass_fields__)
    unknown = [k for k in data if k not in known]
    if unknown:
        logger.warning(f"Ignoring unknown {cls.__name__} keys: {unknown}")
    return cls(**{k: v for k, v in data.items() if k in known})


def engine_config_from_dict(config_dict: Optional[Dict[str, Any]]) -> EngineConfig:
    """Create EngineConfig from the `engine` section of a config dictionary"""
    root = (config_dict or {}).get("engine", config_dict or {})
    return EngineConfig(
        network=_section(NetworkSettings, root.get("network")),
        firewall=_section(FirewallSettings, root.get("firewall")),
        qos=_section(QoSSettings, root.get("qos")),
        paths=_section(PathSettings, root.get("paths")),
        pppoe=_section(PPPoESettings, root.get("pppoe")),
        provisioning=_section(ProvisioningSettings, root.get("provisioning")),
        commands=_section(CommandSettings, root.get("commands")),
    )


def load_config(config_path: str) -> dict:
    """Load configuration from YAML file."""
    path = Path(config_path)
    if not path.exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}
