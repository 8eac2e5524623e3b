# vpcctl/api/shared_api_logic.py
"""
Command operations shared by the CLI and the REST API.

Every function runs one core operation under the global lock (exclusive for
mutations, shared for reads) and records Prometheus metrics for it.
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import List, Optional

from ..config import Settings, get_settings
from ..exceptions import AlreadyExists
from ..firewall.security_groups import SecurityPolicyApplier, SecurityRuleSet
from ..locking import GlobalLock
from ..metrics import METRICS, refresh_inventory
from ..netlink.netlink_manager import get_iptables_manager, get_netlink_manager
from ..reconciler.nat import NatRuleManager
from ..reconciler.peering import PeeringManager
from ..reconciler.reconciler import ReconciliationEngine, verify_namespace
from ..reconciler.topology import TopologyBuilder
from ..validator import Validator
from .models import make_session_factory
from .state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class ControlPlane:
    settings: Settings
    store: StateStore
    lock: GlobalLock
    netlink: object
    iptables: object
    nat: NatRuleManager
    peering: PeeringManager
    topology: TopologyBuilder
    security: SecurityPolicyApplier
    validator: Validator
    reconciler: ReconciliationEngine


def build_control_plane(settings: Optional[Settings] = None, netlink=None, iptables=None) -> ControlPlane:
    """Wire every component together. Providers can be injected for tests."""
    settings = settings or get_settings()
    settings.ensure_state_dir()
    store = StateStore(make_session_factory(settings.db_url))
    netlink = netlink or get_netlink_manager(settings.command_timeout)
    iptables = iptables or get_iptables_manager(settings.command_timeout)

    nat = NatRuleManager(store, netlink, iptables, egress_interface=settings.egress_interface)
    peering = PeeringManager(store, netlink, iptables, nat)
    return ControlPlane(
        settings=settings,
        store=store,
        lock=GlobalLock(settings.lock_file),
        netlink=netlink,
        iptables=iptables,
        nat=nat,
        peering=peering,
        topology=TopologyBuilder(store, netlink, iptables, nat, peering),
        security=SecurityPolicyApplier(store, netlink, iptables),
        validator=Validator(store, netlink, probe_address=settings.probe_address),
        reconciler=ReconciliationEngine(store, netlink, nat),
    )


_control_plane: Optional[ControlPlane] = None


def get_control_plane() -> ControlPlane:
    global _control_plane
    if _control_plane is None:
        _control_plane = build_control_plane()
    return _control_plane


@contextmanager
def _operation(cp: ControlPlane, operation: str, exclusive: bool = True):
    start = time.time()
    outcome = "failure"
    guard = cp.lock.exclusive() if exclusive else cp.lock.shared()
    try:
        with guard:
            yield
            if exclusive:
                refresh_inventory(cp.store)
        outcome = "success"
    except AlreadyExists:
        outcome = "noop"
        raise
    finally:
        METRICS["operations"].labels(operation=operation, outcome=outcome).inc()
        METRICS["operation_latency"].labels(operation=operation).observe((time.time() - start) * 1000)


def _count_teardown(report):
    for result in report.results:
        METRICS["teardown_results"].labels(status=result.status.value).inc()


# VPC Services
def create_vpc_logic(cp: ControlPlane, name: str, cidr: str, subnet_types: List[str], nat_enabled: bool = False):
    with _operation(cp, "create"):
        return cp.topology.create_vpc(name, cidr, subnet_types, nat_enabled)


def list_vpcs_logic(cp: ControlPlane):
    with _operation(cp, "list", exclusive=False):
        return cp.store.list_vpcs()


def export_state_logic(cp: ControlPlane):
    with _operation(cp, "export", exclusive=False):
        return cp.store.export_document()


def describe_vpc_logic(cp: ControlPlane, name: str):
    with _operation(cp, "describe", exclusive=False):
        return cp.store.require_vpc(name)


def delete_vpc_logic(cp: ControlPlane, name: str):
    with _operation(cp, "delete"):
        report = cp.topology.delete_vpc(name)
    _count_teardown(report)
    return report


def cleanup_logic(cp: ControlPlane):
    with _operation(cp, "cleanup"):
        cleanup = cp.topology.cleanup_all()
    _count_teardown(cleanup.teardown)
    return cleanup


# Peering Services
def peer_logic(cp: ControlPlane, vpc1: str, vpc2: str) -> bool:
    with _operation(cp, "peer"):
        return cp.peering.peer(vpc1, vpc2)


def unpeer_logic(cp: ControlPlane, vpc1: str, vpc2: str):
    with _operation(cp, "unpeer"):
        report = cp.peering.unpeer(vpc1, vpc2)
    _count_teardown(report)
    return report


def list_peerings_logic(cp: ControlPlane):
    with _operation(cp, "list-peerings", exclusive=False):
        return cp.peering.peered_pairs()


# Security Services
def apply_security_logic(cp: ControlPlane, vpc_name: str, subnet_type: str, rule_set: SecurityRuleSet):
    with _operation(cp, "security-apply"):
        return cp.security.apply_rules(vpc_name, subnet_type, rule_set)


def clear_security_logic(cp: ControlPlane, vpc_name: str, subnet_type: str) -> str:
    with _operation(cp, "security-clear"):
        return cp.security.clear_rules(vpc_name, subnet_type)


def show_security_logic(cp: ControlPlane, vpc_name: str, subnet_type: str):
    with _operation(cp, "security-show", exclusive=False):
        return cp.security.show_rules(vpc_name, subnet_type)


# Subnet Services
def list_subnets_logic(cp: ControlPlane, vpc_name: str):
    with _operation(cp, "subnet-list", exclusive=False):
        return cp.store.require_vpc(vpc_name).subnet_list()


def subnet_routes_logic(cp: ControlPlane, vpc_name: str, subnet_type: str):
    with _operation(cp, "subnet-routes", exclusive=False):
        namespace = verify_namespace(cp.store, cp.netlink, vpc_name, subnet_type)
        return {"namespace": namespace, "routes": cp.netlink.get_routes(namespace=namespace)}


def subnet_interfaces_logic(cp: ControlPlane, vpc_name: str, subnet_type: str):
    with _operation(cp, "subnet-interfaces", exclusive=False):
        namespace = verify_namespace(cp.store, cp.netlink, vpc_name, subnet_type)
        interfaces = [
            {"name": name, "addresses": cp.netlink.get_addresses(name, namespace=namespace)}
            for name in cp.netlink.get_interfaces(namespace)
        ]
        return {"namespace": namespace, "interfaces": interfaces}


def subnet_connectivity_logic(cp: ControlPlane, vpc_name: str, subnet_type: str):
    with _operation(cp, "subnet-test", exclusive=False):
        verify_namespace(cp.store, cp.netlink, vpc_name, subnet_type)
        return cp.validator.check_subnet(vpc_name, subnet_type)


# Inspection Services
def exec_logic(cp: ControlPlane, vpc_name: str, subnet_type: str, command: List[str], capture: bool = True):
    """Run ``command`` in the subnet's namespace; the lock covers only the lookup."""
    with _operation(cp, "exec", exclusive=False):
        namespace = verify_namespace(cp.store, cp.netlink, vpc_name, subnet_type)
    logger.info(f"Executing in {namespace}: {' '.join(command)}")
    return cp.netlink.exec_in_namespace(namespace, command, capture=capture, bounded=False)


def validate_logic(cp: ControlPlane, vpc_name: str):
    with _operation(cp, "validate", exclusive=False):
        return cp.validator.validate(vpc_name)


def drift_logic(cp: ControlPlane, vpc_name: Optional[str] = None):
    with _operation(cp, "drift", exclusive=False):
        return cp.reconciler.check(vpc_name)
