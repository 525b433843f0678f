"""
PisoGate
========

Network access enforcement and topology reconciliation for coin-operated
WiFi hotspots.

Author: Team PisoGate
"""

from .config import EngineConfig, engine_config_from_dict, load_config
from .engine import NetworkEngine, create_engine_from_config
from .errors import (
    CommandError,
    FirewallError,
    PisoGateError,
    PPPoEStartError,
    ProvisioningError,
    ValidationError,
)

__version__ = "1.0.0"

__all__ = [
    "EngineConfig",
    "engine_config_from_dict",
    "load_config",
    "NetworkEngine",
    "create_engine_from_config",
    "PisoGateError",
    "ValidationError",
    "CommandError",
    "ProvisioningError",
    "FirewallError",
    "PPPoEStartError",
]
