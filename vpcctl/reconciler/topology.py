#!/usr/bin/env python3
"""
Topology Builder

Creates and destroys a VPC's bridge and subnets in dependency order.

Creation aborts at the first failing step and reports it (StepFailed); there
is no rollback, and every provider call it makes is idempotent so the
operation can be retried after a cleanup. Deletion is best-effort: each step
tolerates resources that are already gone, failures are recorded and the
remaining steps still run.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, List

from ..addressing import (
    check_cidr_overlap,
    derive_subnet_cidr,
    gateway_ip,
    host_ip,
    validate_subnet_types,
    validate_vpc_cidr,
    validate_vpc_name,
    vpc_gateway_ip,
    with_prefix,
)
from ..api.diagnostic_logger import DiagnosticLogger
from ..api.state_store import SubnetRecord, VpcRecord
from ..exceptions import (
    ResourceProviderError,
    StepFailed,
    VpcAlreadyExists,
    VpcctlError,
)
from ..naming import bridge_name, namespace_name, subnet_veth_names
from ..netlink.netlink_manager import TeardownReport, TeardownResult, TeardownStatus

logger = logging.getLogger(__name__)

PRIVATE_SUBNET = "private"


@dataclass
class CleanupReport:
    deleted: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    teardown: TeardownReport = field(default_factory=TeardownReport)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self):
        return {
            "deleted": self.deleted,
            "failed": self.failed,
            "teardown": self.teardown.to_dict(),
        }


def plan_subnet(vpc_name: str, vpc_cidr: str, subnet_type: str, index: int) -> SubnetRecord:
    """Derive the full address and name plan of one subnet."""
    cidr = derive_subnet_cidr(vpc_cidr, index)
    inner, outer = subnet_veth_names(vpc_name, subnet_type)
    return SubnetRecord(
        subnet_type=subnet_type,
        index=index,
        cidr=cidr,
        namespace=namespace_name(vpc_name, subnet_type),
        veth=inner,
        veth_br=outer,
        host_ip=host_ip(cidr),
        gateway_ip=gateway_ip(cidr),
    )


class TopologyBuilder:
    def __init__(self, store, netlink, iptables, nat, peering):
        self.store = store
        self.netlink = netlink
        self.iptables = iptables
        self.nat = nat
        self.peering = peering

    @contextmanager
    def _step(self, step: str):
        logger.info(f"Step: {step}")
        try:
            yield
        except StepFailed:
            raise
        except ResourceProviderError as e:
            logger.error(f"Step '{step}' failed: {e}")
            raise StepFailed(step, e) from e

    # Creation --------------------------------------------------------------

    def create_vpc(self, name: str, cidr: str, subnet_types, nat_enabled: bool = False) -> VpcRecord:
        validate_vpc_name(name)
        cidr = validate_vpc_cidr(cidr)
        subnet_types = validate_subnet_types(subnet_types)
        if self.store.vpc_exists(name):
            raise VpcAlreadyExists(name)
        check_cidr_overlap(cidr, [(vpc.name, vpc.cidr) for vpc in self.store.list_vpcs()])

        bridge = bridge_name(name)
        logger.info(f"Creating VPC {name} ({cidr}) with subnets {subnet_types}, NAT={nat_enabled}")

        with self._step(f"create bridge {bridge}"):
            self.netlink.create_bridge(bridge)
            self.netlink.add_address(bridge, with_prefix(vpc_gateway_ip(cidr), cidr))
            self.netlink.set_link_up(bridge)

        self.store.create_vpc(name, cidr, bridge, nat_enabled)

        for subnet_type in subnet_types:
            subnet = plan_subnet(name, cidr, subnet_type, self.store.next_subnet_index(name))
            with self._step(f"create subnet {subnet_type}"):
                self._build_subnet(bridge, subnet)
            self.store.add_subnet(name, subnet)

        vpc = self.store.require_vpc(name)
        with self._step("configure subnet gateways"):
            for subnet in vpc.subnet_list():
                self.netlink.add_address(bridge, with_prefix(subnet.gateway_ip, subnet.cidr))
            self.netlink.ensure_ip_forward()

        if nat_enabled:
            with self._step("enable NAT"):
                self.nat.install_initial_rule(vpc)
            with self._step("isolate private subnets"):
                for subnet in vpc.subnet_list():
                    if subnet.subnet_type == PRIVATE_SUBNET:
                        self._isolate(vpc, subnet)

        logger.info(f"VPC {name} created")
        return self.store.require_vpc(name)

    def _build_subnet(self, bridge: str, subnet: SubnetRecord):
        ns = subnet.namespace
        self.netlink.create_namespace(ns)
        self.netlink.create_veth_pair(subnet.veth, subnet.veth_br)
        self.netlink.attach_to_bridge(subnet.veth_br, bridge)
        self.netlink.set_link_up(subnet.veth_br)
        self.netlink.move_to_namespace(subnet.veth, ns)
        self.netlink.add_address(subnet.veth, with_prefix(subnet.host_ip, subnet.cidr), namespace=ns)
        self.netlink.set_link_up("lo", namespace=ns)
        self.netlink.set_link_up(subnet.veth, namespace=ns)
        self.netlink.add_route("default", via=subnet.gateway_ip, namespace=ns)

    def _isolate(self, vpc: VpcRecord, subnet: SubnetRecord):
        """Swap a private subnet's default route for one scoped to the VPC."""
        result = self.netlink.del_route("default", namespace=subnet.namespace)
        if result.status == TeardownStatus.FAILED:
            raise ResourceProviderError(
                f"Could not remove default route from {subnet.namespace}: {result.detail}"
            )
        self.netlink.add_route(vpc.cidr, via=subnet.gateway_ip, namespace=subnet.namespace)

    # Deletion --------------------------------------------------------------

    def _attempt(self, report: TeardownReport, diag: DiagnosticLogger, step: str, action):
        try:
            outcome = action()
        except VpcctlError as e:
            diag.log_error(f"{step} failed", {"error": str(e)})
            report.add(TeardownResult(step, TeardownStatus.FAILED, str(e)))
            return
        if isinstance(outcome, TeardownResult):
            outcome = TeardownReport([outcome])
        for failure in outcome.failed:
            diag.log_error(f"{step}: could not delete {failure.resource}", {"error": failure.detail})
        report.extend(outcome)

    def _delete_bridge(self, bridge: str) -> TeardownResult:
        if self.netlink.link_exists(bridge):
            self.netlink.set_link_down(bridge)
        return self.netlink.delete_link(bridge)

    def delete_vpc(self, name: str) -> TeardownReport:
        vpc = self.store.require_vpc(name)
        diag = DiagnosticLogger(f"delete-vpc {name}")
        report = TeardownReport()
        subnets = vpc.subnet_list()

        for peer in vpc.peerings:
            self._attempt(report, diag, f"unpeer {peer}", lambda peer=peer: self.peering.unpeer(name, peer))
        for subnet in subnets:
            self._attempt(report, diag, f"delete namespace {subnet.namespace}",
                          lambda s=subnet: self.netlink.delete_namespace(s.namespace))
        for subnet in subnets:
            self._attempt(report, diag, f"delete veth {subnet.veth_br}",
                          lambda s=subnet: self.netlink.delete_link(s.veth_br))
        if vpc.nat_enabled:
            self._attempt(report, diag, "delete NAT uplink", lambda: self.nat.teardown_uplink(name))
        self._attempt(report, diag, f"delete bridge {vpc.bridge}", lambda: self._delete_bridge(vpc.bridge))
        # Unconditional: a VPC without NAT simply has no matching rules.
        self._attempt(report, diag, "remove NAT and forward rules", lambda: self.nat.teardown_rule(vpc.cidr))

        if report.ok:
            self.store.delete_vpc(name)
            diag.log_success(f"VPC '{name}' deleted")
        else:
            diag.log_warning("State record kept so that the deletion can be retried")
        return report

    def cleanup_all(self) -> CleanupReport:
        """Delete every recorded VPC, continuing past individual failures."""
        cleanup = CleanupReport()
        names = self.store.vpc_names()
        if not names:
            logger.info("No VPCs to clean up")
            return cleanup

        for name in names:
            logger.info(f"Deleting VPC: {name}")
            try:
                report = self.delete_vpc(name)
            except VpcctlError as e:
                cleanup.failed[name] = str(e)
                continue
            cleanup.teardown.extend(report)
            if report.ok:
                cleanup.deleted.append(name)
            else:
                cleanup.failed[name] = "; ".join(f"{r.resource}: {r.detail}" for r in report.failed)
        return cleanup
