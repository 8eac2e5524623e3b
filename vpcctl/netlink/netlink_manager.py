#!/usr/bin/env python3
"""
Linux Datapath Manager

Drives the host's network constructs through iproute2, iptables and sysctl:
- Network namespaces (one per subnet, the isolated execution context)
- Bridge interfaces (one per VPC, acting as its switch and router)
- veth pairs (subnet uplinks, NAT uplinks, peering links)
- IP addresses and routes (host and per namespace)
- iptables filter/nat rules

Creation is idempotent: a resource that already exists is detected and skipped.
Deletion never raises; it returns a TeardownResult the caller aggregates.
Every provider command runs with a timeout so a hung tool cannot hang the
process; user commands run through ``exec`` may opt out of it.
"""

import json
import logging
import shlex
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..exceptions import ResourceProviderError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

EXISTS_MARKERS = ("File exists", "already assigned")
ABSENT_MARKERS = (
    "Cannot find device",
    "No such process",
    "No such file or directory",
    "does not exist",
    "Bad rule",
    "No chain/target/match by that name",
)


class TeardownStatus(Enum):
    DELETED = "deleted"
    ALREADY_ABSENT = "already_absent"
    FAILED = "failed"


@dataclass
class TeardownResult:
    """Outcome of deleting one resource."""

    resource: str
    status: TeardownStatus
    detail: str = ""


@dataclass
class TeardownReport:
    """Aggregated teardown outcomes for one operation."""

    results: List[TeardownResult] = field(default_factory=list)

    def add(self, result: TeardownResult) -> TeardownResult:
        self.results.append(result)
        return result

    def extend(self, other: "TeardownReport"):
        self.results.extend(other.results)

    def _resources(self, status: TeardownStatus) -> List[str]:
        return [r.resource for r in self.results if r.status == status]

    @property
    def deleted(self) -> List[str]:
        return self._resources(TeardownStatus.DELETED)

    @property
    def already_absent(self) -> List[str]:
        return self._resources(TeardownStatus.ALREADY_ABSENT)

    @property
    def failed(self) -> List[TeardownResult]:
        return [r for r in self.results if r.status == TeardownStatus.FAILED]

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deleted": self.deleted,
            "already_absent": self.already_absent,
            "failed": [{"resource": r.resource, "detail": r.detail} for r in self.failed],
        }


def _mentions(error: ResourceProviderError, markers: Sequence[str]) -> bool:
    return any(marker in error.stderr for marker in markers)


def run_command(
    cmd: List[str],
    namespace: Optional[str] = None,
    check: bool = True,
    timeout: Optional[float] = DEFAULT_TIMEOUT,
    capture: bool = True,
) -> subprocess.CompletedProcess:
    """Run a command on the host, or inside ``namespace`` when given."""
    if namespace:
        cmd = ["ip", "netns", "exec", namespace] + list(cmd)
    logger.debug(f"Running: {shlex.join(cmd)}")

    try:
        result = subprocess.run(cmd, capture_output=capture, text=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        raise ResourceProviderError(
            f"Command timed out after {timeout}s: {shlex.join(cmd)}", command=cmd
        )
    except OSError as e:
        raise ResourceProviderError(f"Could not run {cmd[0]}: {e}", command=cmd)

    if check and result.returncode != 0:
        stderr = (result.stderr or "").strip()
        raise ResourceProviderError(
            f"Command failed ({result.returncode}): {shlex.join(cmd)}: {stderr}",
            command=cmd,
            returncode=result.returncode,
            stderr=stderr,
        )
    return result


class NetlinkManager:
    """
    Manages Linux links, namespaces, addresses and routes.

    All commands go through iproute2 (``ip``). Names are supplied by the
    caller; see ``vpcctl.naming``.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        self.timeout = timeout

    def _run(self, cmd, namespace=None, check=True, capture=True, bounded=True):
        return run_command(
            cmd,
            namespace=namespace,
            check=check,
            timeout=self.timeout if bounded else None,
            capture=capture,
        )

    def _teardown(self, resource: str, cmd: List[str], namespace=None) -> TeardownResult:
        try:
            self._run(cmd, namespace=namespace)
        except ResourceProviderError as e:
            if _mentions(e, ABSENT_MARKERS):
                return TeardownResult(resource, TeardownStatus.ALREADY_ABSENT)
            logger.error(f"Failed to delete {resource}: {e}")
            return TeardownResult(resource, TeardownStatus.FAILED, str(e))
        return TeardownResult(resource, TeardownStatus.DELETED)

    # Links -----------------------------------------------------------------

    def link_exists(self, name: str, namespace: Optional[str] = None) -> bool:
        result = self._run(["ip", "link", "show", name], namespace=namespace, check=False)
        return result.returncode == 0

    def get_interfaces(self, namespace: Optional[str] = None) -> List[str]:
        """Names of all interfaces, optionally in a namespace."""
        result = self._run(["ip", "-j", "link", "list"], namespace=namespace, check=False)
        try:
            return [link["ifname"] for link in json.loads(result.stdout or "[]")]
        except (json.JSONDecodeError, KeyError, TypeError):
            return []

    def create_bridge(self, name: str) -> bool:
        """Create a bridge device. Returns False if it already existed."""
        if self.link_exists(name):
            logger.warning(f"Bridge {name} already exists, skipping creation")
            return False
        logger.info(f"Creating bridge {name}")
        self._run(["ip", "link", "add", name, "type", "bridge"])
        return True

    def set_link_up(self, name: str, namespace: Optional[str] = None):
        self._run(["ip", "link", "set", name, "up"], namespace=namespace)

    def set_link_down(self, name: str, namespace: Optional[str] = None):
        self._run(["ip", "link", "set", name, "down"], namespace=namespace)

    def delete_link(self, name: str) -> TeardownResult:
        """Delete a bridge or one end of a veth pair (which removes the pair)."""
        if not self.link_exists(name):
            return TeardownResult(name, TeardownStatus.ALREADY_ABSENT)
        logger.info(f"Deleting link {name}")
        return self._teardown(name, ["ip", "link", "del", name])

    def create_veth_pair(self, name: str, peer_name: str) -> bool:
        """Create a veth pair. Returns False if either end already existed."""
        if self.link_exists(name) or self.link_exists(peer_name):
            logger.warning(f"veth pair {name} <-> {peer_name} already exists, skipping creation")
            return False
        logger.info(f"Creating veth pair {name} <-> {peer_name}")
        self._run(["ip", "link", "add", name, "type", "veth", "peer", "name", peer_name])
        return True

    def attach_to_bridge(self, interface: str, bridge: str):
        self._run(["ip", "link", "set", interface, "master", bridge])

    def move_to_namespace(self, interface: str, namespace: str):
        if self.link_exists(interface, namespace=namespace):
            logger.warning(f"{interface} is already inside {namespace}")
            return
        self._run(["ip", "link", "set", interface, "netns", namespace])

    # Addresses -------------------------------------------------------------

    def add_address(self, interface: str, address: str, namespace: Optional[str] = None) -> bool:
        """Add an IP address to an interface. Returns False if already assigned."""
        logger.info(f"Adding {address} to {interface}")
        try:
            self._run(["ip", "addr", "add", address, "dev", interface], namespace=namespace)
        except ResourceProviderError as e:
            if _mentions(e, EXISTS_MARKERS):
                logger.warning(f"{address} is already assigned to {interface}")
                return False
            raise
        return True

    def get_addresses(self, interface: str, namespace: Optional[str] = None) -> List[str]:
        result = self._run(
            ["ip", "-j", "addr", "show", "dev", interface], namespace=namespace, check=False
        )
        try:
            links = json.loads(result.stdout or "[]")
        except json.JSONDecodeError:
            return []
        return [
            f"{info['local']}/{info['prefixlen']}"
            for link in links
            for info in link.get("addr_info", [])
            if info.get("family") == "inet"
        ]

    # Namespaces ------------------------------------------------------------

    def list_namespaces(self) -> List[str]:
        result = self._run(["ip", "netns", "list"])
        return [line.split()[0] for line in (result.stdout or "").splitlines() if line.strip()]

    def namespace_exists(self, name: str) -> bool:
        return name in self.list_namespaces()

    def create_namespace(self, name: str) -> bool:
        """Create a network namespace. Returns False if it already existed."""
        if self.namespace_exists(name):
            logger.warning(f"Namespace {name} already exists, skipping creation")
            return False
        logger.info(f"Creating namespace {name}")
        self._run(["ip", "netns", "add", name])
        return True

    def delete_namespace(self, name: str) -> TeardownResult:
        if not self.namespace_exists(name):
            return TeardownResult(name, TeardownStatus.ALREADY_ABSENT)
        logger.info(f"Deleting namespace {name}")
        return self._teardown(name, ["ip", "netns", "del", name])

    def exec_in_namespace(
        self, namespace: str, command: List[str], capture: bool = True, bounded: bool = True
    ) -> subprocess.CompletedProcess:
        """
        Run an arbitrary command inside a namespace; the exit code is not checked.

        ``bounded=False`` drops the provider timeout, for interactive or
        long-running user commands.
        """
        return self._run(list(command), namespace=namespace, check=False, capture=capture, bounded=bounded)

    # Routes ----------------------------------------------------------------

    def _route_args(self, destination, via=None, device=None) -> List[str]:
        args = [destination]
        if via:
            args.extend(["via", via])
        if device:
            args.extend(["dev", device])
        return args

    def add_route(
        self,
        destination: str,
        via: Optional[str] = None,
        device: Optional[str] = None,
        namespace: Optional[str] = None,
    ) -> bool:
        """Add a route. Returns False if an equivalent route already exists."""
        logger.info(f"Adding route {destination} via {via or device}")
        try:
            self._run(
                ["ip", "route", "add"] + self._route_args(destination, via, device),
                namespace=namespace,
            )
        except ResourceProviderError as e:
            if _mentions(e, EXISTS_MARKERS):
                logger.warning(f"Route {destination} already present")
                return False
            raise
        return True

    def del_route(
        self,
        destination: str,
        via: Optional[str] = None,
        device: Optional[str] = None,
        namespace: Optional[str] = None,
    ) -> TeardownResult:
        where = f"{namespace}:" if namespace else ""
        return self._teardown(
            f"route {where}{destination}",
            ["ip", "route", "del"] + self._route_args(destination, via, device),
            namespace=namespace,
        )

    def get_routes(self, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        """Get all routes, optionally in a namespace."""
        result = self._run(["ip", "-j", "route", "list"], namespace=namespace, check=False)
        if result.returncode != 0:
            return []
        try:
            return json.loads(result.stdout or "[]")
        except json.JSONDecodeError:
            return []

    # Host facts ------------------------------------------------------------

    def get_default_interface(self) -> Optional[str]:
        """Egress interface of the host's default route."""
        for route in self.get_routes():
            if route.get("dst") == "default" and route.get("dev"):
                return route["dev"]
        return None

    def ip_forward_enabled(self) -> bool:
        result = self._run(["sysctl", "-n", "net.ipv4.ip_forward"])
        return result.stdout.strip() == "1"

    def ensure_ip_forward(self) -> bool:
        """Enable IPv4 forwarding process-wide. Never disabled by vpcctl."""
        if self.ip_forward_enabled():
            return False
        logger.info("Enabling IP forwarding")
        self._run(["sysctl", "-w", "net.ipv4.ip_forward=1"])
        return True


@dataclass(frozen=True)
class Rule:
    """One iptables rule in ``iptables -S`` form, minus the ``-A <chain>`` prefix."""

    chain: str
    spec: Tuple[str, ...]
    table: str = "filter"

    @classmethod
    def build(cls, chain: str, *spec: str, table: str = "filter") -> "Rule":
        return cls(chain=chain, spec=tuple(spec), table=table)

    def option(self, flag: str) -> Optional[str]:
        for position, token in enumerate(self.spec[:-1]):
            if token == flag:
                return self.spec[position + 1]
        return None

    @property
    def target(self) -> Optional[str]:
        return self.option("-j")

    def references(self, cidr: str) -> bool:
        return cidr in self.spec

    def __str__(self):
        return f"-t {self.table} -A {self.chain} {' '.join(self.spec)}"


class IPTablesManager:
    """
    Manages iptables rules on the host or inside a namespace.

    Positional deletion contract: ``delete_rules_where`` lists the chain once
    and deletes the matching rule numbers from that snapshot in descending
    order, so earlier deletions never renumber a rule still to be deleted.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        self.timeout = timeout

    def _iptables(self, table: str, *args: str, namespace=None, check=True):
        return run_command(
            ["iptables", "-w", "-t", table] + list(args),
            namespace=namespace,
            check=check,
            timeout=self.timeout,
        )

    def set_policy(self, chain: str, policy: str, namespace=None, table="filter"):
        self._iptables(table, "-P", chain, policy, namespace=namespace)

    def get_policy(self, chain: str, namespace=None, table="filter") -> Optional[str]:
        result = self._iptables(table, "-S", chain, namespace=namespace)
        for line in result.stdout.splitlines():
            tokens = line.split()
            if tokens[:2] == ["-P", chain] and len(tokens) == 3:
                return tokens[2]
        return None

    def list_rules(self, chain: str, table: str = "filter", namespace=None) -> List[Rule]:
        """Rules of ``chain`` in evaluation order; list position + 1 is the rule number."""
        result = self._iptables(table, "-S", chain, namespace=namespace)
        rules = []
        for line in result.stdout.splitlines():
            tokens = shlex.split(line)
            if tokens[:2] == ["-A", chain]:
                rules.append(Rule(chain=chain, spec=tuple(tokens[2:]), table=table))
        return rules

    def rule_exists(self, rule: Rule, namespace=None) -> bool:
        result = self._iptables(rule.table, "-C", rule.chain, *rule.spec, namespace=namespace, check=False)
        return result.returncode == 0

    def append_rule(self, rule: Rule, namespace=None):
        logger.info(f"Appending rule {rule}")
        self._iptables(rule.table, "-A", rule.chain, *rule.spec, namespace=namespace)

    def ensure_rule(self, rule: Rule, namespace=None) -> bool:
        """Append ``rule`` unless an identical rule is already present."""
        if self.rule_exists(rule, namespace=namespace):
            logger.warning(f"Rule already present: {rule}")
            return False
        self.append_rule(rule, namespace=namespace)
        return True

    def delete_rule(self, rule: Rule, namespace=None) -> TeardownResult:
        """Delete one rule by its match criteria."""
        if not self.rule_exists(rule, namespace=namespace):
            return TeardownResult(str(rule), TeardownStatus.ALREADY_ABSENT)
        try:
            self._iptables(rule.table, "-D", rule.chain, *rule.spec, namespace=namespace)
        except ResourceProviderError as e:
            if _mentions(e, ABSENT_MARKERS):
                return TeardownResult(str(rule), TeardownStatus.ALREADY_ABSENT)
            logger.error(f"Failed to delete rule {rule}: {e}")
            return TeardownResult(str(rule), TeardownStatus.FAILED, str(e))
        return TeardownResult(str(rule), TeardownStatus.DELETED)

    def delete_rules_where(
        self,
        chain: str,
        predicate: Callable[[Rule], bool],
        table: str = "filter",
        namespace=None,
    ) -> TeardownReport:
        report = TeardownReport()
        snapshot = self.list_rules(chain, table=table, namespace=namespace)
        numbers = [n for n, rule in enumerate(snapshot, start=1) if predicate(rule)]

        for number in sorted(numbers, reverse=True):
            rule = snapshot[number - 1]
            try:
                self._iptables(table, "-D", chain, str(number), namespace=namespace)
                report.add(TeardownResult(str(rule), TeardownStatus.DELETED))
            except ResourceProviderError as e:
                logger.error(f"Failed to delete rule #{number} ({rule}): {e}")
                report.add(TeardownResult(str(rule), TeardownStatus.FAILED, str(e)))
        return report

    def flush(self, namespace=None, table: str = "filter"):
        """Flush all rules and delete all custom chains of ``table``."""
        self._iptables(table, "-F", namespace=namespace)
        self._iptables(table, "-X", namespace=namespace)


# Singleton instances
_netlink_manager: Optional[NetlinkManager] = None
_iptables_manager: Optional[IPTablesManager] = None


def get_netlink_manager(timeout: float = DEFAULT_TIMEOUT) -> NetlinkManager:
    global _netlink_manager
    if _netlink_manager is None:
        _netlink_manager = NetlinkManager(timeout=timeout)
    return _netlink_manager


def get_iptables_manager(timeout: float = DEFAULT_TIMEOUT) -> IPTablesManager:
    global _iptables_manager
    if _iptables_manager is None:
        _iptables_manager = IPTablesManager(timeout=timeout)
    return _iptables_manager
