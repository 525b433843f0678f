#!/usr/bin/env python3
"""
PisoGate Network Engine
=======================

Wires the components together around one command runner, one row store
and one rebuild lock. Nothing here is a module-level singleton: the CLI,
a web layer or a test each construct their own engine.

Author: Team PisoGate
"""

import subprocess
import time
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from .access import AccessController, AccessResult
from .bandwidth import BandwidthLimiter
from .classifier import classify_interfaces, elect_lan_interface
from .config import EngineConfig, engine_config_from_dict
from .firewall import FirewallEngine
from .inventory import InterfaceInventory
from .locks import KeyedLocks, RebuildLock
from .models import Classification
from .multiwan import MultiWanManager
from .pppoe import PPPoEDriver
from .priority import PriorityClassifier
from .provisioner import TopologyProvisioner
from .reconciler import ReconcileReport, Reconciler
from .runner import CommandRunner
from .sessions import SessionEnforcer, SweepReport
from .store import RowStore, create_store


class NetworkEngine:
    """
    Network access enforcement and topology reconciliation.

    Lifecycle: construct, start() (optionally reconciling), use, stop().
    """

    def __init__(self, config: EngineConfig, store: RowStore, runner=None,
                 sleep: Callable[[float], None] = time.sleep,
                 popen: Callable[..., Any] = subprocess.Popen):
        self.config = config
        self.store = store
        self.runner = runner or CommandRunner(timeout=config.commands.timeout)
        self.rebuild_lock = RebuildLock()
        self.running = False

        self.inventory = InterfaceInventory(self.runner)
        self.provisioner = TopologyProvisioner(self.runner, self.inventory, store, config, KeyedLocks())
        self.limiter = BandwidthLimiter(self.runner, self.inventory, store, config, KeyedLocks(),
                                        self.rebuild_lock)
        self.priority = PriorityClassifier(self.runner, store, config, limiter=self.limiter)
        self.limiter.on_root_created = self.priority.apply_from_store
        self.access = AccessController(self.runner, self.inventory, store, config, self.limiter,
                                       KeyedLocks(), self.rebuild_lock)
        self.firewall = FirewallEngine(self.runner, self.inventory, store, config, self.rebuild_lock)
        self.sessions = SessionEnforcer(store, self.access, self.limiter)
        self.pppoe = PPPoEDriver(self.runner, self.inventory, store, config,
                                 firewall_hook=self.rebuild_firewall, sleep=sleep, popen=popen)
        self.multiwan = MultiWanManager(self.runner, store)
        self.reconciler = Reconciler(store, self.provisioner, self.pppoe, self.multiwan,
                                     self.rebuild_firewall, self.rebuild_lock,
                                     auto_provision=config.provisioning.auto_provision)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, reconcile: bool = True) -> Optional[ReconcileReport]:
        self.running = True
        logger.info("PisoGate engine started")
        return self.reconcile() if reconcile else None

    def stop(self) -> None:
        self.pppoe.tailer.stop()
        self.store.close()
        self.running = False
        logger.info("PisoGate engine stopped")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def classify(self) -> Classification:
        return classify_interfaces(self.inventory.list_interfaces(), self.config.network.lan_network)

    def lan_interface(self) -> str:
        return self.config.network.lan_interface or elect_lan_interface(self.inventory.list_interfaces())

    def reconcile(self) -> ReconcileReport:
        return self.reconciler.run()

    def rebuild_firewall(self) -> List[str]:
        """Baseline rebuild, then re-grant active sessions the flush removed."""
        with self.rebuild_lock.exclusive():
            segments = self.firewall.init_firewall()
            self.sessions.restore_grants()
        return segments

    def grant(self, mac: str, ip: Optional[str] = None) -> AccessResult:
        return self.access.grant(mac, ip)

    def revoke(self, mac: str, ip: Optional[str] = None) -> AccessResult:
        return self.access.revoke(mac, ip)

    def set_limit(self, ip: str, download_mbps: float, upload_mbps: float) -> Optional[str]:
        return self.limiter.set_limit(ip, download_mbps, upload_mbps)

    def remove_limit(self, ip: str) -> List[str]:
        return self.limiter.remove_limit(ip)

    def apply_priority(self, enabled: bool, percentage: int = 20, interface: Optional[str] = None) -> int:
        self.store.set_config("gaming_priority_enabled", "1" if enabled else "0")
        self.store.set_config("gaming_priority_percentage", percentage)
        return self.priority.apply_priority(interface or self.lan_interface(), enabled, percentage)

    def sweep(self) -> SweepReport:
        return self.sessions.sweep()

    def status(self) -> Dict[str, Any]:
        classification = self.classify()
        return {
            "running": self.running,
            "wan": classification.wan,
            "lan_members": classification.lan_members,
            "lan_interface": self.lan_interface(),
            "pppoe": self.pppoe.status(),
            "multi_wan": self.multiwan.load().to_row(),
        }


def create_engine_from_config(config_dict: Dict, runner=None, store: Optional[RowStore] = None) -> NetworkEngine:
    """Create engine from configuration dictionary"""
    config = engine_config_from_dict(config_dict)
    return NetworkEngine(config, store or create_store(config.paths.database), runner=runner)
