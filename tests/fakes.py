"""
In-memory stand-ins for the Linux datapath managers.

They keep the same method signatures and return types as
``vpcctl.netlink.netlink_manager.NetlinkManager`` / ``IPTablesManager`` and
model just enough kernel behaviour to drive the engine end to end: links and
their namespaces, veth peers, bridge ports, addresses with connected routes,
per-namespace routing tables, iptables chains and ping reachability.
"""

import ipaddress
import subprocess

from vpcctl.exceptions import ResourceProviderError
from vpcctl.netlink.netlink_manager import TeardownReport, TeardownResult, TeardownStatus

INTERNET = "internet"


class FakeNetlinkManager:
    def __init__(self, default_interface="eth0"):
        self.links = {}
        self.namespaces = set()
        self.routes = {None: []}
        self.default_interface = default_interface
        self.ip_forward = False
        self.internet_up = True
        self.fail_on = {}
        self.executed = []
        self.bounded = []

    def _maybe_fail(self, operation):
        if operation in self.fail_on:
            raise ResourceProviderError(self.fail_on[operation], command=[operation], returncode=2,
                                        stderr=self.fail_on[operation])

    def _require(self, name, namespace=None):
        link = self.links.get(name)
        if link is None or link["namespace"] != namespace:
            raise ResourceProviderError(f"Cannot find device \"{name}\"", stderr="Cannot find device")
        return link

    def _require_namespace(self, namespace):
        if namespace is not None and namespace not in self.namespaces:
            raise ResourceProviderError(f"Cannot open network namespace \"{namespace}\"",
                                        stderr="No such file or directory")

    def _drop_link(self, name):
        link = self.links.pop(name, None)
        if link is None:
            return
        if link["peer"]:
            self.links.pop(link["peer"], None)
        for other in self.links.values():
            if other["master"] == name:
                other["master"] = None

    # Links

    def link_exists(self, name, namespace=None):
        if name == "lo":
            return namespace is None or namespace in self.namespaces
        link = self.links.get(name)
        return link is not None and link["namespace"] == namespace

    def get_interfaces(self, namespace=None):
        return sorted(n for n, link in self.links.items() if link["namespace"] == namespace)

    def create_bridge(self, name):
        self._maybe_fail("create_bridge")
        if name in self.links:
            return False
        self.links[name] = {"kind": "bridge", "namespace": None, "master": None,
                            "up": False, "peer": None, "addresses": []}
        return True

    def set_link_up(self, name, namespace=None):
        self._maybe_fail("set_link_up")
        if name == "lo":
            self._require_namespace(namespace)
            return
        self._require(name, namespace)["up"] = True

    def set_link_down(self, name, namespace=None):
        self._require(name, namespace)["up"] = False

    def delete_link(self, name):
        if "delete_link" in self.fail_on:
            return TeardownResult(name, TeardownStatus.FAILED, self.fail_on["delete_link"])
        if name not in self.links:
            return TeardownResult(name, TeardownStatus.ALREADY_ABSENT)
        self._drop_link(name)
        return TeardownResult(name, TeardownStatus.DELETED)

    def create_veth_pair(self, name, peer_name):
        self._maybe_fail("create_veth_pair")
        if name in self.links or peer_name in self.links:
            return False
        for own, other in ((name, peer_name), (peer_name, name)):
            self.links[own] = {"kind": "veth", "namespace": None, "master": None,
                               "up": False, "peer": other, "addresses": []}
        return True

    def attach_to_bridge(self, interface, bridge):
        self._require(bridge)
        self._require(interface)["master"] = bridge

    def move_to_namespace(self, interface, namespace):
        self._require_namespace(namespace)
        if self.link_exists(interface, namespace=namespace):
            return
        self._require(interface)["namespace"] = namespace

    def add_address(self, interface, address, namespace=None):
        self._maybe_fail("add_address")
        link = self._require(interface, namespace)
        if address in link["addresses"]:
            return False
        link["addresses"].append(address)
        if namespace is not None:
            network = str(ipaddress.ip_interface(address).network)
            self.routes[namespace].append({"dst": network, "dev": interface, "protocol": "kernel"})
        return True

    def get_addresses(self, interface, namespace=None):
        link = self.links.get(interface)
        if link is None or link["namespace"] != namespace:
            return []
        return list(link["addresses"])

    # Namespaces

    def list_namespaces(self):
        return sorted(self.namespaces)

    def namespace_exists(self, name):
        return name in self.namespaces

    def create_namespace(self, name):
        self._maybe_fail("create_namespace")
        if name in self.namespaces:
            return False
        self.namespaces.add(name)
        self.routes[name] = []
        return True

    def delete_namespace(self, name):
        if name not in self.namespaces:
            return TeardownResult(name, TeardownStatus.ALREADY_ABSENT)
        for link_name in [n for n, link in self.links.items() if link["namespace"] == name]:
            self._drop_link(link_name)
        self.namespaces.discard(name)
        self.routes.pop(name, None)
        return TeardownResult(name, TeardownStatus.DELETED)

    def exec_in_namespace(self, namespace, command, capture=True, bounded=True):
        self.executed.append((namespace, list(command)))
        self.bounded.append(bounded)
        if namespace not in self.namespaces:
            return subprocess.CompletedProcess(command, 1, "", "Cannot open network namespace")
        if command and command[0] == "ping":
            returncode = 0 if self._reachable(namespace, command[-1]) else 1
            return subprocess.CompletedProcess(command, returncode, "", "")
        return subprocess.CompletedProcess(command, 0, "", "")

    def _covers(self, namespace, target):
        address = ipaddress.ip_address(target)
        for route in self.routes.get(namespace, []):
            if route["dst"] == "default" or address in ipaddress.ip_network(route["dst"]):
                return True
        return False

    def _reachable(self, namespace, target):
        if not self._covers(namespace, target):
            return False
        for link in self.links.values():
            if any(a.split("/")[0] == target for a in link["addresses"]):
                return True
        if ipaddress.ip_address(target).is_private:
            return False
        return self.internet_up and any(r["dst"] == "default" for r in self.routes[namespace])

    # Routes

    def add_route(self, destination, via=None, device=None, namespace=None):
        self._maybe_fail("add_route")
        self._require_namespace(namespace)
        table = self.routes[namespace]
        if any(r["dst"] == destination for r in table):
            return False
        route = {"dst": destination}
        if via:
            route["gateway"] = via
        if device:
            route["dev"] = device
        table.append(route)
        return True

    def del_route(self, destination, via=None, device=None, namespace=None):
        resource = f"route {namespace + ':' if namespace else ''}{destination}"
        table = self.routes.get(namespace)
        if table is None:
            return TeardownResult(resource, TeardownStatus.ALREADY_ABSENT)
        for route in table:
            if route["dst"] != destination:
                continue
            if via and route.get("gateway") != via:
                continue
            if device and route.get("dev") != device:
                continue
            table.remove(route)
            return TeardownResult(resource, TeardownStatus.DELETED)
        return TeardownResult(resource, TeardownStatus.ALREADY_ABSENT)

    def get_routes(self, namespace=None):
        return [dict(r) for r in self.routes.get(namespace, [])]

    # Host facts

    def get_default_interface(self):
        return self.default_interface

    def ip_forward_enabled(self):
        return self.ip_forward

    def ensure_ip_forward(self):
        if self.ip_forward:
            return False
        self.ip_forward = True
        return True


class FakeIPTablesManager:
    def __init__(self):
        self.chains = {}
        self.policies = {}

    def _chain(self, namespace, table, chain):
        return self.chains.setdefault((namespace, table, chain), [])

    def set_policy(self, chain, policy, namespace=None, table="filter"):
        self.policies[(namespace, table, chain)] = policy

    def get_policy(self, chain, namespace=None, table="filter"):
        return self.policies.get((namespace, table, chain), "ACCEPT")

    def list_rules(self, chain, table="filter", namespace=None):
        return list(self._chain(namespace, table, chain))

    def rule_exists(self, rule, namespace=None):
        return rule in self._chain(namespace, rule.table, rule.chain)

    def append_rule(self, rule, namespace=None):
        self._chain(namespace, rule.table, rule.chain).append(rule)

    def ensure_rule(self, rule, namespace=None):
        if self.rule_exists(rule, namespace=namespace):
            return False
        self.append_rule(rule, namespace=namespace)
        return True

    def delete_rule(self, rule, namespace=None):
        rules = self._chain(namespace, rule.table, rule.chain)
        if rule not in rules:
            return TeardownResult(str(rule), TeardownStatus.ALREADY_ABSENT)
        rules.remove(rule)
        return TeardownResult(str(rule), TeardownStatus.DELETED)

    def delete_rules_where(self, chain, predicate, table="filter", namespace=None):
        report = TeardownReport()
        rules = self._chain(namespace, table, chain)
        snapshot = list(rules)
        numbers = [n for n, rule in enumerate(snapshot, start=1) if predicate(rule)]
        for number in sorted(numbers, reverse=True):
            del rules[number - 1]
            report.add(TeardownResult(str(snapshot[number - 1]), TeardownStatus.DELETED))
        return report

    def flush(self, namespace=None, table="filter"):
        for key in [k for k in self.chains if k[0] == namespace and k[1] == table]:
            del self.chains[key]

    def all_rules(self, namespace=None):
        """Every rule held for ``namespace`` across tables and chains."""
        return [rule for key, rules in self.chains.items() if key[0] == namespace for rule in rules]
