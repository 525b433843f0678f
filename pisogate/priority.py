"""
PisoGate Priority Classifier
============================

Gaming priority: a dedicated HTB class (1:5, fq_codel leaf 5:) guaranteed
a percentage of the root rate, fed by iptables CLASSIFY rules matching
the source ports of the enabled gaming rules.

Author: Team PisoGate
"""

from typing import List, Optional

from loguru import logger

from . import commands
from .errors import CommandError, ProvisioningError
from .models import GamingRule
from .runner import best_effort, delete_until_absent
from .validation import validate_ifname, validate_percentage

GAMING_CLASS = "1:5"
GAMING_LEAF = "5:"
GAMING_CHAIN = "GAMING_PRIO"


class PriorityClassifier:
    def __init__(self, runner, store, config, limiter=None):
        self.runner = runner
        self.store = store
        self.config = config
        self.limiter = limiter

    def _jump(self, interface: str) -> List[str]:
        return ["-o", interface, "-j", GAMING_CHAIN]

    def clear(self, interface: str) -> None:
        best_effort(self.runner, commands.tc_qdisc_del(interface, GAMING_CLASS))
        best_effort(self.runner, commands.tc_class_del(interface, GAMING_CLASS))
        delete_until_absent(self.runner, commands.ipt_delete("POSTROUTING", self._jump(interface), table="mangle"))
        best_effort(self.runner, commands.ipt_flush("mangle", GAMING_CHAIN), expected=["no_chain"])
        best_effort(self.runner, commands.ipt_remove_chain(GAMING_CHAIN, table="mangle"),
                    expected=["no_chain", "chain_in_use"])

    def enabled_rules(self) -> List[GamingRule]:
        rules = []
        for row in self.store.list("gaming_rules"):
            try:
                rule = GamingRule.from_row(row)
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping malformed gaming rule {row}: {e}")
                continue
            if rule.enabled:
                rules.append(rule)
        return rules

    def apply_priority(self, interface: str, enabled: bool, percentage: Optional[int] = None) -> int:
        """
        Rebuild gaming priority on an interface.

        Existing priority objects are always removed first. Returns the
        number of CLASSIFY rules installed.
        """
        validate_ifname(interface)
        logger.info(f"Applying gaming priority on {interface}: enabled={enabled}, percentage={percentage}")
        self.clear(interface)
        if not enabled:
            return 0

        pct = validate_percentage(percentage if percentage is not None else 20)
        total = self.config.qos.root_rate_mbps
        rate = max(1, total * pct // 100)

        if self.limiter is not None and not self.limiter.has_root(interface):
            self.limiter.init_qos(interface)

        try:
            self.runner.run(commands.tc_class_add(interface, GAMING_CLASS, rate, total, prio=0), check=True)
            self.runner.run(commands.tc_leaf_add(interface, GAMING_CLASS, GAMING_LEAF, "fq_codel"), check=True)
        except CommandError as e:
            raise ProvisioningError(f"Failed to create gaming class on {interface}: {e}", e) from e

        best_effort(self.runner, commands.ipt_new_chain(GAMING_CHAIN, table="mangle"), expected=["chain_exists"])
        try:
            self.runner.run(commands.ipt_append("POSTROUTING", self._jump(interface), table="mangle"), check=True)
        except CommandError as e:
            raise ProvisioningError(f"Failed to hook {GAMING_CHAIN} on {interface}: {e}", e) from e

        installed = 0
        failures = []
        for rule in self.enabled_rules():
            for proto in rule.protocols:
                argv = commands.ipt_append(
                    GAMING_CHAIN,
                    commands.classify_port_rule(proto, rule.port_start, rule.port_end, GAMING_CLASS),
                    table="mangle")
                result = self.runner.run(argv, check=False)
                if result.ok:
                    installed += 1
                else:
                    failures.append(f"{rule.name}/{proto}: {result.output}")

        if failures:
            raise ProvisioningError(f"Gaming priority partially applied on {interface}: " + "; ".join(failures))
        logger.info(f"Gaming priority applied on {interface} with {installed} rule(s) at {rate}mbit")
        return installed

    def apply_from_store(self, interface: str) -> int:
        """Apply using the console's gaming_priority_* config keys."""
        enabled = (self.store.get_config("gaming_priority_enabled") or "0") in ("1", "true")
        percentage = int(self.store.get_config("gaming_priority_percentage") or 20)
        if not enabled:
            return 0
        return self.apply_priority(interface, True, percentage)
