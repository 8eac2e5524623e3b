"""
Peering Manager

Links two VPC bridges with a veth pair, host routes and FORWARD accepts, and
keeps both VPCs' NAT exclusions equal to their peering sets.

Ordering:
- peer: NAT recomputation first (it does not depend on the link), then the
  link, routes and rules, then the symmetric state update;
- unpeer: link, routes and rules removed, then the state update, then NAT
  recomputation from the post-removal peering sets.
"""

import logging
from typing import Iterable, List, Optional

from ..exceptions import InvalidInput
from ..naming import peering_veth_names
from ..netlink.netlink_manager import Rule, TeardownReport

logger = logging.getLogger(__name__)


def forward_rules(vpc_a, vpc_b) -> List[Rule]:
    """The four host FORWARD accepts of a peering link."""
    ends = peering_veth_names(vpc_a.name, vpc_b.name)
    end_a, end_b = ends[vpc_a.name], ends[vpc_b.name]
    return [
        Rule.build("FORWARD", "-s", vpc_a.cidr, "-d", vpc_b.cidr, "-j", "ACCEPT"),
        Rule.build("FORWARD", "-s", vpc_b.cidr, "-d", vpc_a.cidr, "-j", "ACCEPT"),
        Rule.build("FORWARD", "-i", end_a, "-o", end_b, "-j", "ACCEPT"),
        Rule.build("FORWARD", "-i", end_b, "-o", end_a, "-j", "ACCEPT"),
    ]


class PeeringManager:
    def __init__(self, store, netlink, iptables, nat):
        self.store = store
        self.netlink = netlink
        self.iptables = iptables
        self.nat = nat

    def _load_pair(self, vpc1: str, vpc2: str):
        if vpc1 == vpc2:
            raise InvalidInput(f"Cannot peer VPC '{vpc1}' with itself")
        return self.store.require_vpc(vpc1), self.store.require_vpc(vpc2)

    def _peer_cidrs(self, vpc, extra: Optional[str] = None) -> List[str]:
        cidrs = []
        for name in vpc.peerings:
            peer = self.store.get_vpc(name)
            if peer is not None:
                cidrs.append(peer.cidr)
        if extra:
            cidrs.append(extra)
        return cidrs

    def peer(self, vpc1: str, vpc2: str) -> bool:
        """Peer two VPCs. Returns False (no-op) when they are already peered."""
        a, b = self._load_pair(vpc1, vpc2)
        if b.name in a.peerings:
            logger.warning(f"VPCs '{vpc1}' and '{vpc2}' are already peered")
            return False

        logger.info(f"Peering {a.name} ({a.cidr}) <-> {b.name} ({b.cidr})")
        for vpc, other in ((a, b), (b, a)):
            if vpc.nat_enabled:
                self.nat.recompute_rule(vpc, self._peer_cidrs(vpc, extra=other.cidr))

        ends = peering_veth_names(a.name, b.name)
        self.netlink.create_veth_pair(ends[a.name], ends[b.name])
        self.netlink.attach_to_bridge(ends[a.name], a.bridge)
        self.netlink.attach_to_bridge(ends[b.name], b.bridge)
        self.netlink.set_link_up(ends[a.name])
        self.netlink.set_link_up(ends[b.name])

        self.netlink.add_route(b.cidr, device=a.bridge)
        self.netlink.add_route(a.cidr, device=b.bridge)

        for rule in forward_rules(a, b):
            self.iptables.ensure_rule(rule)

        self.store.add_peering(a.name, b.name)
        logger.info(f"VPCs '{a.name}' and '{b.name}' peered")
        return True

    def unpeer(self, vpc1: str, vpc2: str) -> TeardownReport:
        """Remove a peering. Returns an empty report when they are not peered."""
        a, b = self._load_pair(vpc1, vpc2)
        report = TeardownReport()
        if b.name not in a.peerings:
            logger.warning(f"VPCs '{vpc1}' and '{vpc2}' are not peered")
            return report

        logger.info(f"Unpeering {a.name} <-> {b.name}")
        ends = peering_veth_names(a.name, b.name)
        report.add(self.netlink.delete_link(ends[a.name]))
        report.add(self.netlink.del_route(b.cidr, device=a.bridge))
        report.add(self.netlink.del_route(a.cidr, device=b.bridge))
        for rule in forward_rules(a, b):
            report.add(self.iptables.delete_rule(rule))

        self.store.remove_peering(a.name, b.name)

        for name in (a.name, b.name):
            self.nat.refresh(name)
        return report

    def peered_pairs(self) -> Iterable[tuple]:
        """Every peering as a sorted (a, b) pair, once."""
        pairs = set()
        for vpc in self.store.list_vpcs():
            for peer in vpc.peerings:
                pairs.add(tuple(sorted((vpc.name, peer))))
        return sorted(pairs)
