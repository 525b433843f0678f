#!/usr/bin/env python3
"""
PisoGate Firewall Engine
========================

Flush-then-rebuild of the captive-portal baseline.

Order:
1. IP forwarding on
2. Flush filter and nat, and the mangle FORWARD chain
3. Policies INPUT ACCEPT / FORWARD DROP / OUTPUT ACCEPT
4. MASQUERADE out of the WAN
5. PPPoE tunnels (ppp+) accepted and exempt from the portal
6. LAN input, ESTABLISHED/RELATED forwarding, MSS clamp
7. DNS on client segments forced to the local resolver; forwarded DNS
   and known public resolvers dropped
8. Port 80 on client segments redirected to the portal

Client segments are the elected LAN interface plus every enabled hotspot
segment, so portal redirects for VLAN segments survive a rebuild.

Author: Team PisoGate
"""

from typing import List, Optional

from loguru import logger

from . import commands
from .classifier import classify_interfaces, elect_lan_interface
from .errors import FirewallError
from .models import HotspotSegment
from .runner import best_effort

PPP_PATTERN = "ppp+"


class FirewallEngine:
    def __init__(self, runner, inventory, store, config, rebuild_lock):
        self.runner = runner
        self.inventory = inventory
        self.store = store
        self.config = config
        self.rebuild_lock = rebuild_lock
        self.last_wan: Optional[str] = None
        self.last_lan: Optional[str] = None

    def _client_interfaces(self, lan: str) -> List[str]:
        names = [lan]
        for row in self.store.list("hotspots"):
            try:
                segment = HotspotSegment.from_row(row)
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping malformed hotspot row: {e}")
                continue
            if not segment.enabled:
                continue
            target = self.inventory.link_master(segment.interface) or segment.interface
            if target not in names:
                names.append(target)
        return names

    def init_firewall(self) -> List[str]:
        """
        Rebuild the baseline rule set.

        Runs under the exclusive rebuild lock. Every rule is attempted;
        failures are collected and raised together as FirewallError.

        Returns the client interfaces the gate was installed on.
        """
        with self.rebuild_lock.exclusive():
            failures: List[str] = []

            def rule(argv: List[str]):
                result = self.runner.run(argv, check=False)
                if not result.ok:
                    failures.append(f"{' '.join(argv)}: {result.output or result.returncode}")

            settings = self.config.firewall
            interfaces = self.inventory.list_interfaces()
            wan = self.config.network.wan_interface or \
                classify_interfaces(interfaces, self.config.network.lan_network).wan
            lan = self.config.network.lan_interface or elect_lan_interface(interfaces)
            clients = self._client_interfaces(lan)
            logger.info(f"Rebuilding firewall: WAN={wan}, LAN={lan}, segments={clients}")

            rule(commands.sysctl_set("net.ipv4.ip_forward", "1"))

            best_effort(self.runner, commands.ipt_flush("filter"))
            best_effort(self.runner, commands.ipt_delete_chains("filter"), expected=["chain_in_use", "no_chain"])
            best_effort(self.runner, commands.ipt_flush("nat"))
            best_effort(self.runner, commands.ipt_delete_chains("nat"), expected=["chain_in_use", "no_chain"])
            best_effort(self.runner, commands.ipt_flush("mangle", "FORWARD"))

            rule(commands.ipt_policy("INPUT", "ACCEPT"))
            rule(commands.ipt_policy("FORWARD", "DROP"))
            rule(commands.ipt_policy("OUTPUT", "ACCEPT"))

            rule(commands.ipt_append("POSTROUTING", ["-o", wan, "-j", "MASQUERADE"], table="nat"))

            rule(commands.ipt_insert("PREROUTING", commands.iface_match("-i", PPP_PATTERN) + ["-j", "ACCEPT"],
                                     table="nat"))

            for iface in clients:
                rule(commands.ipt_append("INPUT", ["-i", iface, "-j", "ACCEPT"]))

            rule(commands.ipt_append("FORWARD", ["-m", "state", "--state", "ESTABLISHED,RELATED", "-j", "ACCEPT"]))
            rule(commands.ipt_append("FORWARD", commands.iface_match("-i", PPP_PATTERN) + ["-j", "ACCEPT"]))
            rule(commands.ipt_append("FORWARD", commands.iface_match("-o", PPP_PATTERN) + ["-j", "ACCEPT"]))
            rule(commands.ipt_append("INPUT", commands.iface_match("-i", PPP_PATTERN) + ["-j", "ACCEPT"]))

            if settings.mss_clamp:
                rule(commands.ipt_append("FORWARD", ["-p", "tcp", "--tcp-flags", "SYN,RST", "SYN",
                                                     "-j", "TCPMSS", "--clamp-mss-to-pmtu"], table="mangle"))

            for iface in clients:
                for proto in ("udp", "tcp"):
                    rule(commands.ipt_append("PREROUTING",
                                             commands.redirect_rule(iface, proto, 53, settings.local_dns_port),
                                             table="nat"))
                for proto in ("udp", "tcp"):
                    rule(commands.ipt_append("FORWARD", ["-i", iface, "-p", proto, "--dport", "53", "-j", "DROP"]))
                for resolver in settings.blocked_resolvers:
                    rule(commands.ipt_append("FORWARD", ["-i", iface, "-d", resolver, "-j", "DROP"]))

            for iface in clients:
                rule(commands.ipt_append("PREROUTING",
                                         commands.redirect_rule(iface, "tcp", 80, settings.portal_port),
                                         table="nat"))

            self.last_wan, self.last_lan = wan, lan
            if failures:
                logger.error(f"Firewall rebuilt with {len(failures)} failure(s)")
                raise FirewallError(failures)

            logger.info(f"Firewall ready. LAN: {lan}, WAN: {wan}. Authorized clients resolve via "
                        f"{settings.trusted_dns}")
            return clients
