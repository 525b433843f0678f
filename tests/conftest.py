"""
PisoGate Test Fixtures
======================

Shared pytest fixtures for the enforcement engine.

FakeKernel stands in for CommandRunner: it keeps links, addresses,
iptables chains, tc objects and processes in memory and answers the
ip / iptables / tc / ... argv lists the engine builds, including the
error text the real tools print, so idempotency and convergence can be
checked against kernel state without root.
"""

import copy
import ipaddress
import json
import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from pisogate.engine import create_engine_from_config
from pisogate.errors import CommandError
from pisogate.runner import CommandResult
from pisogate.store import MemoryRowStore

BUILTIN_CHAINS = {
    "filter": ["INPUT", "FORWARD", "OUTPUT"],
    "nat": ["PREROUTING", "INPUT", "OUTPUT", "POSTROUTING"],
    "mangle": ["PREROUTING", "INPUT", "FORWARD", "OUTPUT", "POSTROUTING"],
}

NO_CHAIN = "iptables: No chain/target/match by that name."
BAD_RULE = "iptables: Bad rule (does a matching rule exist in that chain?)."
FILE_EXISTS = "RTNETLINK answers: File exists"
NO_SUCH_FILE = "RTNETLINK answers: No such file or directory"

CLIENT_MAC = "AA:BB:CC:DD:EE:01"
CLIENT_IP = "10.0.0.42"


def _parent(value: str) -> str:
    return "1:" if value in ("1:", "1:0") else value


def _u32_match_lines(args) -> List[str]:
    """`match ip src|dst A/32` rendered the way tc prints it back."""
    lines = []
    for i, token in enumerate(args):
        if token == "match" and args[i + 1] == "ip" and args[i + 2] in ("src", "dst"):
            address = args[i + 3].split("/")[0]
            packed = "".join(f"{int(o):02x}" for o in address.split("."))
            offset = 12 if args[i + 2] == "src" else 16
            lines.append(f"  match {packed}/ffffffff at {offset}")
    return lines


class FakeKernel:
    """In-memory model of the network stack, driven by argv lists."""

    def __init__(self):
        self.links: Dict[str, dict] = {}
        self.chains = {table: {c: [] for c in chains} for table, chains in BUILTIN_CHAINS.items()}
        self.policies: Dict[tuple, str] = {}
        self.qdiscs: Dict[str, List[dict]] = {}
        self.classes: Dict[str, Dict[str, dict]] = {}
        self.filters: Dict[str, List[dict]] = {}
        self.ip_rules: set = set()
        self.routes: List[List[str]] = []
        self.sysctls: Dict[str, str] = {}
        self.processes: List[str] = []
        self.missing_binaries: set = set()
        self.missing_modules: set = set()
        self.dying: set = set()
        self.failures: List[tuple] = []
        self.calls: List[List[str]] = []
        self.spawned: List[List[str]] = []
        self._ifindex = 1
        self.add_link("lo", kind="loopback", addr="127.0.0.1/8")

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------

    def add_link(self, name: str, kind: str = "ethernet", up: bool = True, addr: Optional[str] = None,
                 parent: Optional[str] = None, vlan_id: Optional[int] = None, master: Optional[str] = None):
        self.links[name] = {
            "ifindex": self._ifindex, "kind": kind, "up": up,
            "addrs": [addr] if addr else [], "master": master,
            "parent": parent, "vlan_id": vlan_id, "stp": False,
            "mac": "02:00:00:00:00:%02x" % self._ifindex,
        }
        self._ifindex += 1
        return self.links[name]

    def fail(self, *prefix: str, stderr: str = "RTNETLINK answers: Operation not permitted", rc: int = 2):
        """Make every command starting with prefix fail."""
        self.failures.append((list(prefix), stderr, rc))

    def rules(self, chain: str, table: str = "filter") -> List[List[str]]:
        return [list(r) for r in self.chains[table].get(chain, [])]

    def count(self, chain: str, rule: List[str], table: str = "filter") -> int:
        return sum(1 for r in self.chains[table].get(chain, []) if r == list(rule))

    def calls_matching(self, *prefix: str) -> List[List[str]]:
        return [c for c in self.calls if c[:len(prefix)] == list(prefix)]

    def snapshot(self) -> dict:
        """Comparable kernel state; tc objects are unordered, rules are not."""
        return copy.deepcopy({
            "chains": self.chains,
            "qdiscs": {d: sorted(qs, key=lambda q: q["handle"]) for d, qs in self.qdiscs.items()},
            "classes": self.classes,
            "filters": {d: sorted(fs, key=lambda f: (f["parent"], f["prio"])) for d, fs in self.filters.items()},
            "links": {n: (l["master"], l["up"]) for n, l in self.links.items()},
        })

    # ------------------------------------------------------------------
    # Runner surface
    # ------------------------------------------------------------------

    def run(self, argv, check=True, timeout=None) -> CommandResult:
        argv = [str(a) for a in argv]
        self.calls.append(argv)
        result = self._injected(argv) or self._dispatch(argv)
        if check and not result.ok:
            raise CommandError(argv, result.returncode, result.stdout, result.stderr, result.timed_out)
        return result

    def spawn(self, argv, log_path=None) -> int:
        argv = [str(a) for a in argv]
        self.calls.append(argv)
        self.spawned.append(argv)
        if Path(argv[0]).name not in self.dying:
            self.processes.append(" ".join(argv))
        return 4242

    def which(self, exe: str) -> bool:
        return self.run(["which", exe], check=False).ok

    def _injected(self, argv) -> Optional[CommandResult]:
        for prefix, stderr, rc in self.failures:
            if argv[:len(prefix)] == prefix:
                return CommandResult(argv, rc, "", stderr)
        return None

    def _dispatch(self, argv) -> CommandResult:
        handler = {
            "ip": self._ip, "iptables": self._iptables, "tc": self._tc,
            "conntrack": self._conntrack, "sysctl": self._sysctl, "modprobe": self._modprobe,
            "pgrep": self._pgrep, "pkill": self._pkill, "systemctl": self._ok_cmd,
            "dnsmasq": self._dnsmasq, "hostapd": self._hostapd, "which": self._which,
            "ping": self._ok_cmd,
        }.get(argv[0])
        if handler is None:
            return CommandResult(argv, 127, "", f"{argv[0]}: command not found")
        return handler(argv)

    @staticmethod
    def _ok(argv, stdout: str = "") -> CommandResult:
        return CommandResult(argv, 0, stdout, "")

    @staticmethod
    def _err(argv, stderr: str, rc: int = 2) -> CommandResult:
        return CommandResult(argv, rc, "", stderr)

    def _ok_cmd(self, argv):
        return self._ok(argv)

    # ------------------------------------------------------------------
    # ip
    # ------------------------------------------------------------------

    def _link_json(self, name: str, detailed: bool = True) -> dict:
        link = self.links[name]
        loopback = link["kind"] == "loopback"
        entry = {
            "ifindex": link["ifindex"],
            "ifname": name,
            "operstate": "UNKNOWN" if loopback else ("UP" if link["up"] else "DOWN"),
            "link_type": "loopback" if loopback else "ether",
            "address": link["mac"],
        }
        if link["master"]:
            entry["master"] = link["master"]
        if link["kind"] == "vlan":
            entry["link"] = link["parent"]
            if detailed:
                entry["linkinfo"] = {"info_kind": "vlan", "info_data": {"protocol": "802.1Q", "id": link["vlan_id"]}}
        elif link["kind"] == "bridge" and detailed:
            entry["linkinfo"] = {"info_kind": "bridge", "info_data": {"stp_state": int(link["stp"])}}
        entry["addr_info"] = [{"family": "inet", "local": a.split("/")[0], "prefixlen": int(a.split("/")[1])}
                              for a in link["addrs"]]
        return entry

    def _delete_link(self, name: str) -> None:
        del self.links[name]
        for other in list(self.links):
            link = self.links.get(other)
            if link is None:
                continue
            if link["master"] == name:
                link["master"] = None
            if link["kind"] == "vlan" and link["parent"] == name:
                self._delete_link(other)
        for state in (self.qdiscs, self.classes, self.filters):
            state.pop(name, None)

    def _ip(self, argv):
        args = argv[1:]
        flags = []
        while args and args[0].startswith("-"):
            flags.append(args.pop(0))
        obj, verb, rest = args[0], args[1], args[2:]

        if obj == "addr":
            if verb == "show" and not rest:
                return self._ok(argv, json.dumps([self._link_json(n, "-d" in flags) for n in self.links]))
            dev = rest[rest.index("dev") + 1]
            if dev not in self.links:
                return self._err(argv, f'Cannot find device "{dev}"', 1)
            link = self.links[dev]
            if verb == "show":
                lines = [f"{link['ifindex']}: {dev}: <BROADCAST,MULTICAST,UP> mtu 1500"]
                lines += [f"    inet {a} scope global {dev}" for a in link["addrs"]]
                return self._ok(argv, "\n".join(lines) + "\n")
            if verb == "flush":
                link["addrs"] = []
                return self._ok(argv)
            if verb == "add":
                if rest[0] in link["addrs"]:
                    return self._err(argv, FILE_EXISTS)
                link["addrs"].append(rest[0])
                return self._ok(argv)

        if obj == "link":
            if verb == "show":
                name = rest[0]
                if name not in self.links:
                    return self._err(argv, f'Device "{name}" does not exist.', 1)
                if "-j" in flags:
                    return self._ok(argv, json.dumps([self._link_json(name, detailed=False)]))
                return self._ok(argv, f"{self.links[name]['ifindex']}: {name}: <BROADCAST,MULTICAST> mtu 1500\n")
            if verb == "add":
                if rest[0] == "link":
                    parent, name, vlan_id = rest[1], rest[3], int(rest[-1])
                    if name in self.links:
                        return self._err(argv, FILE_EXISTS)
                    if parent not in self.links:
                        return self._err(argv, f'Cannot find device "{parent}"', 1)
                    self.add_link(name, kind="vlan", up=False, parent=parent, vlan_id=vlan_id)
                    return self._ok(argv)
                name = rest[1]
                if name in self.links:
                    return self._err(argv, FILE_EXISTS)
                self.add_link(name, kind="bridge", up=False)["stp"] = "stp_state" in rest
                return self._ok(argv)
            if verb == "delete":
                if rest[0] not in self.links:
                    return self._err(argv, f'Cannot find device "{rest[0]}"', 1)
                self._delete_link(rest[0])
                return self._ok(argv)
            if verb == "set":
                dev = rest[1]
                if dev not in self.links:
                    return self._err(argv, f'Cannot find device "{dev}"', 1)
                link = self.links[dev]
                op = rest[2]
                if op in ("up", "down"):
                    link["up"] = op == "up"
                elif op == "master":
                    if rest[3] not in self.links:
                        return self._err(argv, f'Cannot find device "{rest[3]}"', 1)
                    link["master"] = rest[3]
                elif op == "nomaster":
                    link["master"] = None
                elif op == "type":
                    link["stp"] = rest[-1] == "1"
                return self._ok(argv)

        if obj == "route":
            if verb == "get":
                target = ipaddress.IPv4Address(rest[0])
                for name, link in self.links.items():
                    if link["kind"] == "loopback":
                        continue
                    for addr in link["addrs"]:
                        iface = ipaddress.IPv4Interface(addr)
                        if target in iface.network:
                            return self._ok(argv, f"{rest[0]} dev {name} src {iface.ip} uid 0 \n    cache \n")
                return self._err(argv, "RTNETLINK answers: Network is unreachable")
            if verb == "replace":
                self.routes.append(rest)
            return self._ok(argv)

        if obj == "rule":
            key = (int(rest[rest.index("fwmark") + 1]), int(rest[rest.index("table") + 1]))
            if verb == "add":
                self.ip_rules.add(key)
                return self._ok(argv)
            if key not in self.ip_rules:
                return self._err(argv, NO_SUCH_FILE)
            self.ip_rules.discard(key)
            return self._ok(argv)

        return self._err(argv, f'Command "{verb}" is unknown, try "ip {obj} help".', 255)

    # ------------------------------------------------------------------
    # iptables
    # ------------------------------------------------------------------

    def _referenced(self, table: str, chain: str) -> bool:
        for rules in self.chains[table].values():
            for rule in rules:
                for i, token in enumerate(rule[:-1]):
                    if token == "-j" and rule[i + 1] == chain:
                        return True
        return False

    def _iptables(self, argv):
        args = argv[1:]
        table = "filter"
        if args[:1] == ["-t"]:
            table, args = args[1], args[2:]
        op, args = args[0], args[1:]
        chains = self.chains[table]
        builtin = BUILTIN_CHAINS[table]

        if op == "-F":
            if args:
                if args[0] not in chains:
                    return self._err(argv, NO_CHAIN, 1)
                chains[args[0]] = []
            else:
                for name in chains:
                    chains[name] = []
            return self._ok(argv)

        if op == "-X":
            targets = [args[0]] if args else [c for c in chains if c not in builtin]
            for name in targets:
                if name not in chains or name in builtin:
                    return self._err(argv, NO_CHAIN, 1)
                if self._referenced(table, name):
                    return self._err(argv, "iptables: Too many links.", 1)
                if chains[name]:
                    return self._err(argv, "iptables: Directory not empty.", 1)
            for name in targets:
                del chains[name]
            return self._ok(argv)

        if op == "-P":
            self.policies[(table, args[0])] = args[1]
            return self._ok(argv)

        if op == "-N":
            if args[0] in chains:
                return self._err(argv, "iptables: Chain already exists.", 1)
            chains[args[0]] = []
            return self._ok(argv)

        chain = args[0]
        if chain not in chains:
            return self._err(argv, NO_CHAIN, 1)

        if op == "-A":
            chains[chain].append(args[1:])
            return self._ok(argv)

        if op == "-I":
            position, rule = (int(args[1]), args[2:]) if args[1].isdigit() else (1, args[1:])
            if position > len(chains[chain]) + 1:
                return self._err(argv, "iptables: Index of insertion too big.", 1)
            chains[chain].insert(position - 1, rule)
            return self._ok(argv)

        if op == "-D":
            rule = args[1:]
            if rule not in chains[chain]:
                return self._err(argv, BAD_RULE, 1)
            chains[chain].remove(rule)
            return self._ok(argv)

        return self._err(argv, f"iptables: unknown option \"{op}\"", 2)

    # ------------------------------------------------------------------
    # tc
    # ------------------------------------------------------------------

    def _tc(self, argv):
        kind, verb, args = argv[1], argv[2], argv[3:]
        dev = args[args.index("dev") + 1]
        if dev not in self.links:
            return self._err(argv, f'Cannot find device "{dev}"', 1)
        qdiscs = self.qdiscs.setdefault(dev, [])
        classes = self.classes.setdefault(dev, {})
        filters = self.filters.setdefault(dev, [])

        def opt(name):
            return args[args.index(name) + 1] if name in args else None

        has_root = any(q["parent"] == "root" for q in qdiscs)
        has_ingress = any(q["kind"] == "ingress" for q in qdiscs)

        if kind == "qdisc":
            if verb == "show":
                if not qdiscs:
                    return self._ok(argv, "qdisc noqueue 0: root refcnt 2 \n")
                lines = []
                for q in qdiscs:
                    if q["parent"] == "root":
                        lines.append(f"qdisc {q['kind']} {q['handle']} root refcnt 2 r2q 10 default 0x1")
                    elif q["kind"] == "ingress":
                        lines.append("qdisc ingress ffff: parent ffff:fff1 ----------------")
                    else:
                        lines.append(f"qdisc {q['kind']} {q['handle']} parent {q['parent']} limit 10240p")
                return self._ok(argv, "\n".join(lines) + "\n")
            if verb == "add":
                if "root" in args:
                    if has_root:
                        return self._err(argv, "Error: Exclusivity flag on, cannot modify.")
                    qdiscs.append({"kind": args[args.index("handle") + 2], "handle": opt("handle"),
                                   "parent": "root"})
                    return self._ok(argv)
                if "ingress" in args:
                    if has_ingress:
                        return self._err(argv, FILE_EXISTS)
                    qdiscs.append({"kind": "ingress", "handle": "ffff:", "parent": "ffff:fff1"})
                    return self._ok(argv)
                parent, handle = opt("parent"), opt("handle")
                if parent not in classes:
                    return self._err(argv, "Error: Specified class not found.")
                if any(q["handle"] == handle or q["parent"] == parent for q in qdiscs):
                    return self._err(argv, FILE_EXISTS)
                qdiscs.append({"kind": args[args.index("handle") + 2], "handle": handle, "parent": parent})
                return self._ok(argv)
            if verb == "del":
                if "root" in args:
                    if not has_root:
                        return self._err(argv, "Error: Cannot delete qdisc with handle of zero.")
                    qdiscs[:] = [q for q in qdiscs if q["kind"] == "ingress"]
                    classes.clear()
                    filters[:] = [f for f in filters if f["parent"] != "1:"]
                    return self._ok(argv)
                parent = opt("parent")
                match = [q for q in qdiscs if q["parent"] == parent]
                if not match:
                    return self._err(argv, "Error: Cannot find specified qdisc on specified device.")
                qdiscs.remove(match[0])
                return self._ok(argv)

        if kind == "class":
            if verb == "show":
                lines = []
                for classid, c in classes.items():
                    leaf = next((q["handle"] for q in qdiscs if q["parent"] == classid), None)
                    lines.append(f"class htb {classid} root {'leaf ' + leaf + ' ' if leaf else ''}"
                                 f"prio {c['prio'] or 0} rate {c['rate']} ceil {c['ceil']} burst 1600b")
                return self._ok(argv, "\n".join(lines) + ("\n" if lines else ""))
            classid = opt("classid")
            if verb == "add":
                if not has_root:
                    return self._err(argv, "Error: Failed to find qdisc with specified handle.")
                if classid in classes:
                    return self._err(argv, FILE_EXISTS)
                classes[classid] = {"parent": opt("parent"), "rate": opt("rate"), "ceil": opt("ceil"),
                                    "prio": opt("prio")}
                return self._ok(argv)
            if verb == "del":
                if classid not in classes:
                    return self._err(argv, NO_SUCH_FILE)
                del classes[classid]
                qdiscs[:] = [q for q in qdiscs if q["parent"] != classid]
                return self._ok(argv)

        if kind == "filter":
            parent = _parent(opt("parent"))
            if verb == "show":
                lines = []
                for f in filters:
                    if f["parent"] == parent:
                        lines.append(f"filter parent {parent} protocol ip pref {f['prio']} u32 chain 0 ")
                        lines.append(f"filter parent {parent} protocol ip pref {f['prio']} u32 chain 0 "
                                     f"fh 800::800 order 2048 key ht 800 bkt 0 flowid {f['flowid']} not_in_hw")
                        lines.extend(_u32_match_lines(f["args"]))
                return self._ok(argv, "\n".join(lines) + ("\n" if lines else ""))
            prio = int(opt("prio"))
            if verb == "add":
                if (parent == "1:" and not has_root) or (parent == "ffff:" and not has_ingress):
                    return self._err(argv, "Error: Parent Qdisc doesn't exists.")
                filters.append({"parent": parent, "prio": prio, "flowid": opt("flowid"), "args": args})
                return self._ok(argv)
            if verb == "del":
                match = [f for f in filters if f["parent"] == parent and f["prio"] == prio]
                if not match:
                    return self._err(argv, "Error: Filter with specified priority/protocol not found.")
                filters[:] = [f for f in filters if f not in match]
                return self._ok(argv)

        return self._err(argv, f'Command "{verb}" is unknown, try "tc help".', 255)

    # ------------------------------------------------------------------
    # Everything else
    # ------------------------------------------------------------------

    def _conntrack(self, argv):
        return self._err(argv, "conntrack v1.4.6 (conntrack-tools): 0 flow entries have been deleted.", 1)

    def _sysctl(self, argv):
        key, value = argv[-1].split("=", 1)
        self.sysctls[key] = value
        return self._ok(argv, f"{key} = {value}\n")

    def _modprobe(self, argv):
        if argv[-1] in self.missing_modules:
            return self._err(argv, f"modprobe: FATAL: Module {argv[-1]} not found in directory /lib/modules", 1)
        return self._ok(argv)

    def _matching(self, argv) -> List[str]:
        if "-x" in argv:
            name = argv[-1]
            return [p for p in self.processes if Path(p.split()[0]).name == name]
        pattern = argv[-1]
        return [p for p in self.processes if pattern in p]

    def _pgrep(self, argv):
        found = self._matching(argv)
        if not found:
            return CommandResult(argv, 1, "", "")
        return self._ok(argv, "\n".join(str(1000 + i) for i, _ in enumerate(found)) + "\n")

    def _pkill(self, argv):
        found = self._matching(argv)
        if not found:
            return CommandResult(argv, 1, "", "")
        self.processes = [p for p in self.processes if p not in found]
        return self._ok(argv)

    def _dnsmasq(self, argv):
        return self._ok(argv, "dnsmasq: syntax check OK.\n")

    def _hostapd(self, argv):
        self.processes.append(" ".join(argv))
        return self._ok(argv)

    def _which(self, argv):
        if argv[1] in self.missing_binaries:
            return CommandResult(argv, 1, "", "")
        return self._ok(argv, f"/usr/sbin/{argv[1]}\n")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def kernel():
    """Uplink on eth0, a spare NIC and one radio."""
    k = FakeKernel()
    k.add_link("eth0", addr="192.168.1.10/24")
    k.add_link("eth1")
    k.add_link("wlan0", kind="wifi")
    return k


@pytest.fixture
def lan_kernel(kernel):
    """Same box with wlan0 and eth1 bridged into br0 at 10.0.0.1/24."""
    kernel.add_link("br0", kind="bridge", addr="10.0.0.1/24")
    kernel.links["wlan0"]["master"] = "br0"
    kernel.links["eth1"]["master"] = "br0"
    return kernel


@pytest.fixture
def test_config(tmp_path):
    """Engine configuration with every path under tmp_path and no delays."""
    return {
        "general": {"log_level": "DEBUG"},
        "logging": {"file": str(tmp_path / "logs" / "pisogate.log")},
        "engine": {
            "network": {"lan_network": "10.0.0.0/24"},
            "qos": {"settle_seconds": 0, "default_download_mbps": 5, "default_upload_mbps": 5},
            "paths": {
                "database": "",
                "dnsmasq_dir": str(tmp_path / "dnsmasq.d"),
                "hostapd_dir": str(tmp_path / "hostapd"),
                "ppp_dir": str(tmp_path / "ppp"),
                "pppd_log": str(tmp_path / "log" / "pppd.log"),
                "pppoe_log": str(tmp_path / "log" / "pppoe-server.log"),
                "run_dir": str(tmp_path / "run"),
                "lock_dir": str(tmp_path / "lock"),
            },
            "pppoe": {"start_grace_seconds": 0, "stop_settle_seconds": 0, "tail_log": False,
                      "sysfs_net": str(tmp_path / "sys" / "class" / "net")},
            "provisioning": {"auto_provision": False},
        },
    }


@pytest.fixture
def store():
    return MemoryRowStore()


@pytest.fixture
def engine_factory(test_config):
    """Build engines over a given kernel/store, with optional engine overrides."""
    engines = []

    def build(kernel, store=None, **overrides):
        config = copy.deepcopy(test_config)
        for section, values in overrides.items():
            config["engine"].setdefault(section, {}).update(values)
        engine = create_engine_from_config(config, runner=kernel, store=store or MemoryRowStore())
        engines.append(engine)
        return engine

    yield build
    for engine in engines:
        engine.stop()


@pytest.fixture
def engine(engine_factory, kernel, store):
    return engine_factory(kernel, store)


@pytest.fixture
def lan_engine(engine_factory, lan_kernel, store):
    return engine_factory(lan_kernel, store)


@pytest.fixture
def active_session(store):
    """A paid, running session for CLIENT_MAC at CLIENT_IP."""
    row = {"mac": CLIENT_MAC, "ip": CLIENT_IP, "remaining_seconds": 3600, "total_paid": 10,
           "is_paused": 0, "download_limit": 0, "upload_limit": 0}
    store.insert("sessions", row)
    return row
