#!/usr/bin/env python3
"""
PisoGate Reconciler
===================

Maps the persisted topology rows back onto the kernel, in a fixed order:

    [auto-provision] -> VLANs -> bridges -> hotspot segments (one DHCP
    restart) -> wireless APs -> PPPoE server -> multi-WAN -> firewall

Each step, and each row inside a step, is isolated: a failure is logged
and recorded in the report, and the run continues. Every row is re-read
right before it is restored, so rows deleted meanwhile are skipped.

Author: Team PisoGate
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from loguru import logger

from .errors import PisoGateError
from .models import (
    BridgeBinding,
    HotspotSegment,
    PPPoEServerConfig,
    VlanBinding,
    WirelessAP,
)

ITEM_ERRORS = (PisoGateError, KeyError, ValueError, OSError)


@dataclass
class StepResult:
    name: str
    ok: bool = True
    restored: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def fail(self, item: str, error: BaseException) -> None:
        self.ok = False
        self.errors.append(f"{item}: {error}")
        logger.error(f"[{self.name}] {item} failed: {error}")


@dataclass
class ReconcileReport:
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    steps: List[StepResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(step.ok for step in self.steps)

    def step(self, name: str) -> Optional[StepResult]:
        return next((s for s in self.steps if s.name == name), None)

    def to_dict(self) -> Dict[str, object]:
        return {
            "started_at": self.started_at,
            "ok": self.ok,
            "steps": [s.__dict__ for s in self.steps],
        }


class Reconciler:
    def __init__(self, store, provisioner, pppoe, multiwan,
                 rebuild_firewall: Callable[[], object], rebuild_lock,
                 auto_provision: bool = False):
        self.store = store
        self.provisioner = provisioner
        self.pppoe = pppoe
        self.multiwan = multiwan
        self.rebuild_firewall = rebuild_firewall
        self.rebuild_lock = rebuild_lock
        self.auto_provision = auto_provision

    def _keys(self, table: str, key: str, where: Optional[dict] = None) -> List:
        return [row[key] for row in self.store.list(table, where)]

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _auto_provision(self, step: StepResult) -> None:
        step.restored.extend(self.provisioner.auto_provision())

    def _vlans(self, step: StepResult) -> None:
        for name in self._keys("vlans", "name"):
            row = self.store.get("vlans", name)
            if row is None:
                step.skipped.append(name)
                continue
            try:
                binding = VlanBinding.from_row(row)
                self.provisioner.create_vlan(binding.parent, binding.vlan_id, name=binding.name, persist=False)
                step.restored.append(name)
            except ITEM_ERRORS as e:
                step.fail(name, e)

    def _bridges(self, step: StepResult) -> None:
        for name in self._keys("bridges", "name"):
            row = self.store.get("bridges", name)
            if row is None:
                step.skipped.append(name)
                continue
            try:
                binding = BridgeBinding.from_row(row)
                self.provisioner.create_bridge(binding.name, binding.members, binding.stp, persist=False)
                step.restored.append(name)
            except ITEM_ERRORS as e:
                step.fail(name, e)

    def _hotspots(self, step: StepResult) -> None:
        for interface in self._keys("hotspots", "interface"):
            row = self.store.get("hotspots", interface)
            if row is None:
                step.skipped.append(interface)
                continue
            try:
                segment = HotspotSegment.from_row(row)
                if not segment.enabled:
                    step.skipped.append(interface)
                    continue
                self.provisioner.setup_hotspot_segment(segment, restart=False, persist=False)
                step.restored.append(interface)
            except ITEM_ERRORS as e:
                step.fail(interface, e)

        if step.restored:
            try:
                self.provisioner.restart_dhcp_service()
            except ITEM_ERRORS as e:
                step.fail("dhcp-service", e)

    def _wireless(self, step: StepResult) -> None:
        for interface in self._keys("wireless_settings", "interface"):
            row = self.store.get("wireless_settings", interface)
            if row is None:
                step.skipped.append(interface)
                continue
            try:
                self.provisioner.configure_wireless_ap(WirelessAP.from_row(row), persist=False)
                step.restored.append(interface)
            except ITEM_ERRORS as e:
                step.fail(interface, e)

    def _pppoe(self, step: StepResult) -> None:
        for interface in self._keys("pppoe_server", "interface"):
            row = self.store.get("pppoe_server", interface)
            if row is None or not row.get("enabled"):
                continue
            try:
                self.pppoe.start(PPPoEServerConfig.from_row(row), rebuild_firewall=False)
                step.restored.append(interface)
            except ITEM_ERRORS as e:
                step.fail(interface, e)
            # one server per appliance
            break

    def _multiwan(self, step: StepResult) -> None:
        config = self.multiwan.load()
        if not config.enabled:
            return
        try:
            self.multiwan.apply(config)
            step.restored.append(config.mode)
        except ITEM_ERRORS as e:
            step.fail("multi-wan", e)

    def _firewall(self, step: StepResult) -> None:
        try:
            self.rebuild_firewall()
            step.restored.append("baseline")
        except ITEM_ERRORS as e:
            step.fail("baseline", e)

    # ------------------------------------------------------------------

    def run(self) -> ReconcileReport:
        """Restore everything; never raises for individual failures."""
        report = ReconcileReport()
        steps = []
        if self.auto_provision:
            steps.append(("auto_provision", self._auto_provision))
        steps += [
            ("vlans", self._vlans),
            ("bridges", self._bridges),
            ("hotspots", self._hotspots),
            ("wireless", self._wireless),
            ("pppoe", self._pppoe),
            ("multi_wan", self._multiwan),
            ("firewall", self._firewall),
        ]

        logger.info("Restoring network configuration...")
        with self.rebuild_lock.exclusive():
            for name, func in steps:
                result = StepResult(name)
                try:
                    func(result)
                except ITEM_ERRORS as e:
                    result.fail(name, e)
                report.steps.append(result)
                logger.debug(f"[{name}] restored={result.restored} skipped={result.skipped}")

        if report.ok:
            logger.info("Network configuration restored")
        else:
            failed = [s.name for s in report.steps if not s.ok]
            logger.warning(f"Network configuration restored with failures in: {', '.join(failed)}")
        return report
