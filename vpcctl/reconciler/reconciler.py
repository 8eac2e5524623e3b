#!/usr/bin/env python3
"""
Drift Detection Engine

Compares the topology recorded in the state store (desired state) with what
the kernel actually holds (actual state) and reports every disagreement.

It never repairs anything: recovery is an explicit delete/create by the
operator, guided by the expected-versus-found detail of each entry.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..exceptions import ResourceProviderError, StateInconsistency
from ..naming import namespace_name, nat_veth_names, peering_veth_names

logger = logging.getLogger(__name__)


class ResourceType(Enum):
    BRIDGE = "bridge"
    NAMESPACE = "namespace"
    VETH = "veth"
    NAT_UPLINK = "nat_uplink"
    NAT_RULE = "nat_rule"
    PEERING_LINK = "peering_link"


@dataclass
class Inconsistency:
    """One resource whose live state disagrees with the record."""

    resource_type: ResourceType
    resource_id: str
    expected: Any
    found: Any

    def to_dict(self):
        return {
            "resource_type": self.resource_type.value,
            "resource_id": self.resource_id,
            "expected": self.expected,
            "found": self.found,
        }


@dataclass
class ReconciliationResult:
    """Result of a drift check."""

    success: bool
    inconsistencies: List[Inconsistency] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    duration_ms: float = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "inconsistencies": [i.to_dict() for i in self.inconsistencies],
            "errors": self.errors,
            "duration_ms": self.duration_ms,
        }


def verify_namespace(store, netlink, vpc_name: str, subnet_type: str) -> str:
    """
    Return the subnet's recorded namespace after confirming it exists live.

    Raises StateInconsistency naming the expected namespace and the ones
    actually present, so the mismatch can be reconciled by hand.
    """
    recorded = store.require_subnet(vpc_name, subnet_type).namespace
    live = netlink.list_namespaces()
    if recorded in live:
        return recorded

    generated = namespace_name(vpc_name, subnet_type)
    message = f"Namespace {recorded} recorded for {vpc_name}/{subnet_type} does not exist"
    if generated != recorded:
        message += f" (naming would generate {generated})"
    raise StateInconsistency(message, expected=recorded, found=live)


class ReconciliationEngine:
    def __init__(self, store, netlink, nat):
        self.store = store
        self.netlink = netlink
        self.nat = nat

    def check(self, vpc_name: Optional[str] = None) -> ReconciliationResult:
        """Compare state with the kernel for one VPC, or for all of them."""
        start = time.time()
        vpcs = [self.store.require_vpc(vpc_name)] if vpc_name else self.store.list_vpcs()
        result = ReconciliationResult(success=True)

        try:
            namespaces = set(self.netlink.list_namespaces())
            for vpc in vpcs:
                self._check_vpc(vpc, namespaces, result)
        except ResourceProviderError as e:
            logger.error(f"Drift check aborted: {e}")
            result.errors.append(str(e))

        result.success = not result.inconsistencies and not result.errors
        result.duration_ms = (time.time() - start) * 1000
        if result.inconsistencies:
            logger.warning(f"Drift check found {len(result.inconsistencies)} inconsistencies")
        return result

    def _expect_link(self, result, resource_type, name, namespace=None):
        if not self.netlink.link_exists(name, namespace=namespace):
            where = f" in {namespace}" if namespace else ""
            result.inconsistencies.append(
                Inconsistency(resource_type, name, expected="present", found=f"absent{where}")
            )

    def _check_vpc(self, vpc, namespaces, result: ReconciliationResult):
        self._expect_link(result, ResourceType.BRIDGE, vpc.bridge)

        for subnet in vpc.subnet_list():
            if subnet.namespace not in namespaces:
                result.inconsistencies.append(Inconsistency(
                    ResourceType.NAMESPACE, subnet.namespace, expected="present", found=sorted(namespaces)
                ))
            else:
                self._expect_link(result, ResourceType.VETH, subnet.veth, namespace=subnet.namespace)
            self._expect_link(result, ResourceType.VETH, subnet.veth_br)

        if vpc.nat_enabled:
            host_end, _ = nat_veth_names(vpc.name)
            self._expect_link(result, ResourceType.NAT_UPLINK, host_end)
            self._check_nat_rule(vpc, result)

        for peer in vpc.peerings:
            end = peering_veth_names(vpc.name, peer)[vpc.name]
            self._expect_link(result, ResourceType.PEERING_LINK, end)

    def _check_nat_rule(self, vpc, result: ReconciliationResult):
        expected = sorted(
            peer.cidr for peer in (self.store.get_vpc(name) for name in vpc.peerings) if peer
        )
        try:
            live = self.nat.current_rule(vpc.cidr)
        except StateInconsistency as e:
            result.inconsistencies.append(
                Inconsistency(ResourceType.NAT_RULE, vpc.cidr, expected=e.expected, found=e.found)
            )
            return
        if live is None:
            result.inconsistencies.append(Inconsistency(
                ResourceType.NAT_RULE, vpc.cidr, expected={"exclusions": expected}, found=None
            ))
        elif list(live.exclusions) != expected:
            result.inconsistencies.append(Inconsistency(
                ResourceType.NAT_RULE, vpc.cidr,
                expected={"exclusions": expected}, found={"exclusions": list(live.exclusions)},
            ))
