"""
PisoGate Command Builders
=========================

Pure functions returning argv lists for ip, iptables, tc, conntrack and
the daemons the engine drives. Every argument is validated first; nothing
here touches the system.

Author: Team PisoGate
"""

from typing import List, Optional, Sequence, Tuple

from .validation import (
    validate_discipline,
    validate_host_ipv4,
    validate_ifname,
    validate_ifname_pattern,
    validate_ipv4,
    validate_mac,
    validate_port,
    validate_port_range,
    validate_rate_mbps,
    validate_vlan_id,
)

IPTABLES = "iptables"
CONNTRACK = "conntrack"
TC = "tc"


def rate_arg(mbps: float) -> str:
    """tc rate string; whole megabits stay in mbit, fractions go to kbit."""
    value = validate_rate_mbps(mbps, allow_zero=False)
    if float(value).is_integer():
        return f"{int(value)}mbit"
    return f"{int(round(value * 1000))}kbit"


# ---------------------------------------------------------------------------
# ip
# ---------------------------------------------------------------------------

def ip_addr_show_json(detailed: bool = True) -> List[str]:
    return ["ip", "-d", "-j", "addr", "show"] if detailed else ["ip", "-j", "addr", "show"]


def ip_link_show_json(name: str) -> List[str]:
    return ["ip", "-j", "link", "show", validate_ifname(name)]


def ip_link_show(name: str) -> List[str]:
    return ["ip", "link", "show", validate_ifname(name)]


def ip_link_add_vlan(parent: str, name: str, vlan_id: int) -> List[str]:
    return ["ip", "link", "add", "link", validate_ifname(parent), "name", validate_ifname(name),
            "type", "vlan", "id", str(validate_vlan_id(vlan_id))]


def ip_link_add_bridge(name: str, stp: bool = False) -> List[str]:
    argv = ["ip", "link", "add", "name", validate_ifname(name), "type", "bridge"]
    if stp:
        argv += ["stp_state", "1"]
    return argv


def ip_link_set_bridge_stp(name: str, stp: bool) -> List[str]:
    return ["ip", "link", "set", "dev", validate_ifname(name), "type", "bridge",
            "stp_state", "1" if stp else "0"]


def ip_link_delete(name: str) -> List[str]:
    return ["ip", "link", "delete", validate_ifname(name)]


def ip_link_set_state(name: str, up: bool = True) -> List[str]:
    return ["ip", "link", "set", "dev", validate_ifname(name), "up" if up else "down"]


def ip_link_set_master(member: str, bridge: str) -> List[str]:
    return ["ip", "link", "set", "dev", validate_ifname(member), "master", validate_ifname(bridge)]


def ip_link_set_nomaster(member: str) -> List[str]:
    return ["ip", "link", "set", "dev", validate_ifname(member), "nomaster"]


def ip_addr_flush(name: str) -> List[str]:
    return ["ip", "addr", "flush", "dev", validate_ifname(name)]


def ip_addr_add(address: str, prefix: int, name: str) -> List[str]:
    return ["ip", "addr", "add", f"{validate_ipv4(address)}/{int(prefix)}", "dev", validate_ifname(name)]


def ip_addr_show_dev(name: str) -> List[str]:
    return ["ip", "addr", "show", "dev", validate_ifname(name)]


def ip_route_get(address: str) -> List[str]:
    return ["ip", "route", "get", validate_ipv4(address)]


def ip_rule_add_fwmark(mark: int, table: int) -> List[str]:
    return ["ip", "rule", "add", "fwmark", str(int(mark)), "table", str(int(table))]


def ip_rule_del_fwmark(mark: int, table: int) -> List[str]:
    return ["ip", "rule", "del", "fwmark", str(int(mark)), "table", str(int(table))]


def ip_route_replace_default(gateway: str, dev: str, table: Optional[int] = None) -> List[str]:
    argv = ["ip", "route", "replace", "default", "via", validate_ipv4(gateway), "dev", validate_ifname(dev)]
    if table is not None:
        argv += ["table", str(int(table))]
    return argv


def ip_route_replace_multipath(nexthops: Sequence[Tuple[str, str, int]]) -> List[str]:
    """nexthops: (gateway, dev, weight) triples."""
    argv = ["ip", "route", "replace", "default", "scope", "global"]
    for gateway, dev, weight in nexthops:
        argv += ["nexthop", "via", validate_ipv4(gateway), "dev", validate_ifname(dev),
                 "weight", str(max(1, int(weight)))]
    return argv


def ip_route_flush_cache() -> List[str]:
    return ["ip", "route", "flush", "cache"]


# ---------------------------------------------------------------------------
# iptables
# ---------------------------------------------------------------------------

def iptables(*args: str, table: Optional[str] = None) -> List[str]:
    argv = [IPTABLES]
    if table and table != "filter":
        argv += ["-t", table]
    return argv + [str(a) for a in args]


def ipt_flush(table: str, chain: Optional[str] = None) -> List[str]:
    return iptables("-F", *([chain] if chain else []), table=table)


def ipt_delete_chains(table: str) -> List[str]:
    return iptables("-X", table=table)


def ipt_policy(chain: str, target: str) -> List[str]:
    return iptables("-P", chain, target)


def ipt_new_chain(chain: str, table: str = "filter") -> List[str]:
    return iptables("-N", chain, table=table)


def ipt_remove_chain(chain: str, table: str = "filter") -> List[str]:
    return iptables("-X", chain, table=table)


def mac_match(mac: str) -> List[str]:
    return ["-m", "mac", "--mac-source", validate_mac(mac)]


def forward_mac_rule(mac: str, target: str) -> List[str]:
    """Rule body (without the chain op) for a per-client FORWARD verdict."""
    return mac_match(mac) + ["-j", target]


def portal_bypass_rule(mac: str) -> List[str]:
    return mac_match(mac) + ["-j", "ACCEPT"]


def dns_dnat_rule(mac: str, protocol: str, resolver: str) -> List[str]:
    return ["-p", protocol] + mac_match(mac) + ["--dport", "53", "-j", "DNAT",
                                                "--to-destination", f"{validate_ipv4(resolver)}:53"]


def ipt_insert(chain: str, rule: List[str], position: int = 1, table: str = "filter") -> List[str]:
    return iptables("-I", chain, str(position), *rule, table=table)


def ipt_append(chain: str, rule: List[str], table: str = "filter") -> List[str]:
    return iptables("-A", chain, *rule, table=table)


def ipt_delete(chain: str, rule: List[str], table: str = "filter") -> List[str]:
    return iptables("-D", chain, *rule, table=table)


def iface_match(direction: str, name: str) -> List[str]:
    return [direction, validate_ifname_pattern(name)]


def classify_port_rule(protocol: str, port_start: int, port_end: int, classid: str) -> List[str]:
    first, last = validate_port_range(port_start, port_end)
    ports = str(first) if first == last else f"{first}:{last}"
    return ["-p", protocol, "--sport", ports, "-j", "CLASSIFY", "--set-class", classid]


def redirect_rule(iface: str, protocol: str, port: int, to_port: int) -> List[str]:
    return ["-i", validate_ifname(iface), "-p", protocol, "--dport", str(validate_port(port)),
            "-j", "REDIRECT", "--to-ports", str(validate_port(to_port))]


# ---------------------------------------------------------------------------
# conntrack / sysctl / modules / processes
# ---------------------------------------------------------------------------

def conntrack_flush(address: str, direction: str) -> List[str]:
    flag = "-s" if direction == "src" else "-d"
    return [CONNTRACK, "-D", flag, validate_ipv4(address)]


def sysctl_set(key: str, value: str) -> List[str]:
    return ["sysctl", "-w", f"{key}={value}"]


def modprobe(module: str) -> List[str]:
    return ["modprobe", module]


def pgrep_exact(name: str) -> List[str]:
    return ["pgrep", "-x", name]


def pgrep_full(pattern: str) -> List[str]:
    return ["pgrep", "-f", pattern]


def pkill_kill(name: str) -> List[str]:
    return ["pkill", "-9", "-x", name]


def pkill_full(pattern: str) -> List[str]:
    return ["pkill", "-f", pattern]


def systemctl(action: str, unit: str) -> List[str]:
    return ["systemctl", action, unit]


def dnsmasq_test() -> List[str]:
    return ["dnsmasq", "--test"]


def hostapd_start(conf_path: str) -> List[str]:
    return ["hostapd", "-B", conf_path]


def pppoe_server(interface: str, local_ip: str, pool_start: str, pool_count: int,
                 options_path: str, service_name: str = "") -> List[str]:
    argv = ["pppoe-server", "-I", validate_ifname(interface),
            "-L", validate_ipv4(local_ip),
            "-R", validate_ipv4(pool_start),
            "-N", str(int(pool_count))]
    if service_name:
        argv += ["-S", service_name, "-C", service_name]
    return argv + ["-O", options_path]


# ---------------------------------------------------------------------------
# tc
# ---------------------------------------------------------------------------

def tc_show(kind: str, dev: str, parent: Optional[str] = None) -> List[str]:
    argv = [TC, kind, "show", "dev", validate_ifname(dev)]
    if parent:
        argv += ["parent", parent]
    return argv


def tc_root_htb(dev: str, default_minor: int = 1) -> List[str]:
    return [TC, "qdisc", "add", "dev", validate_ifname(dev), "root", "handle", "1:",
            "htb", "default", str(default_minor)]


def tc_root_del(dev: str) -> List[str]:
    return [TC, "qdisc", "del", "dev", validate_ifname(dev), "root"]


def tc_class_add(dev: str, classid: str, rate_mbps: float, ceil_mbps: Optional[float] = None,
                 prio: Optional[int] = None, parent: str = "1:") -> List[str]:
    argv = [TC, "class", "add", "dev", validate_ifname(dev), "parent", parent, "classid", classid,
            "htb", "rate", rate_arg(rate_mbps), "ceil", rate_arg(ceil_mbps or rate_mbps)]
    if prio is not None:
        argv += ["prio", str(int(prio))]
    return argv


def tc_class_del(dev: str, classid: str, parent: str = "1:") -> List[str]:
    return [TC, "class", "del", "dev", validate_ifname(dev), "parent", parent, "classid", classid]


def tc_leaf_add(dev: str, parent: str, handle: str, discipline: str,
                bandwidth_mbps: Optional[float] = None) -> List[str]:
    argv = [TC, "qdisc", "add", "dev", validate_ifname(dev), "parent", parent, "handle", handle,
            validate_discipline(discipline)]
    if discipline == "cake" and bandwidth_mbps:
        argv += ["bandwidth", rate_arg(bandwidth_mbps)]
    return argv


def tc_qdisc_del(dev: str, parent: str) -> List[str]:
    return [TC, "qdisc", "del", "dev", validate_ifname(dev), "parent", parent]


def tc_ingress_add(dev: str) -> List[str]:
    return [TC, "qdisc", "add", "dev", validate_ifname(dev), "handle", "ffff:", "ingress"]


def tc_filter_dst(dev: str, prio: int, address: str, flowid: str) -> List[str]:
    return [TC, "filter", "add", "dev", validate_ifname(dev), "parent", "1:0", "protocol", "ip",
            "prio", str(int(prio)), "u32", "match", "ip", "dst", f"{validate_host_ipv4(address)}/32",
            "flowid", flowid]


def tc_filter_police_src(dev: str, prio: int, address: str, rate_mbps: float, burst_kb: int) -> List[str]:
    return [TC, "filter", "add", "dev", validate_ifname(dev), "parent", "ffff:", "protocol", "ip",
            "prio", str(int(prio)), "u32", "match", "ip", "src", f"{validate_host_ipv4(address)}/32",
            "police", "rate", rate_arg(rate_mbps), "burst", f"{int(burst_kb)}k", "drop", "flowid", ":1"]


def tc_filter_del_prio(dev: str, parent: str, prio: int) -> List[str]:
    return [TC, "filter", "del", "dev", validate_ifname(dev), "parent", parent,
            "protocol", "ip", "prio", str(int(prio))]
