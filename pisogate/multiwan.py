"""
PisoGate Multi-WAN
==================

Load-balances client traffic across several upstream links.

- pcc: connections are spread with `statistic --mode nth` marks saved to
  the conntrack entry; each mark routes through its own table (100+mark)
- ecmp: one multipath default route weighted per link

Author: Team PisoGate
"""

from typing import Dict, List, Optional

from loguru import logger

from . import commands
from .errors import ProvisioningError, ValidationError
from .models import MultiWanConfig
from .runner import best_effort, delete_until_absent
from .validation import validate_ifname, validate_ipv4

CHAIN = "AJC_MULTIWAN"
MODES = ("pcc", "ecmp")
TABLE_BASE = 100
MAX_LINKS = 8


class MultiWanManager:
    def __init__(self, runner, store):
        self.runner = runner
        self.store = store

    def load(self) -> MultiWanConfig:
        row = self.store.get("multi_wan_config", 1)
        return MultiWanConfig.from_row(row) if row else MultiWanConfig()

    def save(self, config: MultiWanConfig) -> None:
        self.store.upsert("multi_wan_config", config.to_row())

    def _validate(self, config: MultiWanConfig) -> None:
        if config.mode not in MODES:
            raise ValidationError(f"Invalid multi-WAN mode: {config.mode!r}")
        if len(config.interfaces) > MAX_LINKS:
            raise ValidationError(f"At most {MAX_LINKS} WAN links are supported")
        for link in config.interfaces:
            validate_ifname(link.interface)
            validate_ipv4(link.gateway)

    def clear(self) -> None:
        best_effort(self.runner, commands.ipt_flush("mangle", CHAIN), expected=["no_chain"])
        delete_until_absent(self.runner, commands.ipt_delete("PREROUTING", ["-j", CHAIN], table="mangle"))
        for mark in range(1, MAX_LINKS + 1):
            delete_until_absent(self.runner, commands.ip_rule_del_fwmark(mark, TABLE_BASE + mark))

    def apply(self, config: Optional[MultiWanConfig] = None) -> Dict[str, object]:
        """
        Rebuild multi-WAN state from a config (the stored one by default).

        Disabled or single-link configs only clean up.
        """
        config = config or self.load()
        self._validate(config)
        logger.info(f"Applying multi-WAN: enabled={config.enabled}, mode={config.mode}, "
                    f"method={config.pcc_method}, links={len(config.interfaces)}")
        self.clear()

        if not config.enabled or len(config.interfaces) < 2:
            best_effort(self.runner, commands.ipt_remove_chain(CHAIN, table="mangle"), expected=["no_chain"])
            return {"active": False, "mode": config.mode}

        failures: List[str] = []

        def step(argv: List[str]):
            result = self.runner.run(argv, check=False)
            if not result.ok:
                failures.append(f"{' '.join(argv)}: {result.output}")

        best_effort(self.runner, commands.ipt_new_chain(CHAIN, table="mangle"), expected=["chain_exists"])
        step(commands.ipt_insert("PREROUTING", ["-j", CHAIN], table="mangle"))

        links = config.interfaces
        if config.mode == "pcc":
            step(commands.ipt_append(CHAIN, ["-j", "CONNMARK", "--restore-mark"], table="mangle"))
            step(commands.ipt_append(CHAIN, ["-m", "mark", "!", "--mark", "0", "-j", "RETURN"], table="mangle"))
            for idx, link in enumerate(links):
                mark = idx + 1
                table = TABLE_BASE + mark
                step(commands.ipt_append(CHAIN, ["-m", "statistic", "--mode", "nth", "--every",
                                                 str(len(links) - idx), "--packet", "0",
                                                 "-j", "MARK", "--set-mark", str(mark)], table="mangle"))
                step(commands.ipt_append(CHAIN, ["-m", "mark", "--mark", str(mark),
                                                 "-j", "CONNMARK", "--save-mark"], table="mangle"))
                step(commands.ipt_append(CHAIN, ["-m", "mark", "--mark", str(mark), "-j", "RETURN"],
                                         table="mangle"))
                step(commands.ip_rule_add_fwmark(mark, table))
                step(commands.ip_route_replace_default(link.gateway, link.interface, table))
        else:
            step(commands.ip_route_replace_multipath([(l.gateway, l.interface, l.weight) for l in links]))

        best_effort(self.runner, commands.ip_route_flush_cache())

        if failures:
            raise ProvisioningError("Multi-WAN partially applied: " + "; ".join(failures))
        logger.info(f"Multi-WAN active across {', '.join(l.interface for l in links)}")
        return {"active": True, "mode": config.mode, "links": [l.interface for l in links]}
