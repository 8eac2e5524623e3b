"""
NAT Rule Manager

Maintains the source-NAT projection of every NAT-enabled VPC:

    at most one MASQUERADE rule per VPC, whose exclusion set equals the
    CIDRs of the VPC's live peers.

iptables accepts a single ``-d`` per rule, so the projection is rendered as
one RETURN rule per excluded peer CIDR followed by the MASQUERADE rule, all in
``nat/POSTROUTING`` and all matching ``-s <vpc cidr> -o <egress>``. The unit is
recomputed and replaced wholesale, never patched.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from ..addressing import nat_host_ip, with_prefix
from ..exceptions import ResourceProviderError, StateInconsistency
from ..naming import nat_veth_names
from ..netlink.netlink_manager import Rule, TeardownReport, TeardownResult

logger = logging.getLogger(__name__)

NAT_CHAIN = "POSTROUTING"
NAT_TARGETS = ("MASQUERADE", "RETURN")


@dataclass(frozen=True)
class NatRule:
    source: str
    egress_interface: str
    exclusions: Tuple[str, ...] = ()

    def render(self) -> List[Rule]:
        """The POSTROUTING rules implementing this projection, in order."""
        rules = [
            Rule.build(NAT_CHAIN, "-s", self.source, "-d", peer, "-o", self.egress_interface,
                       "-j", "RETURN", table="nat")
            for peer in self.exclusions
        ]
        rules.append(
            Rule.build(NAT_CHAIN, "-s", self.source, "-o", self.egress_interface,
                       "-j", "MASQUERADE", table="nat")
        )
        return rules

    def to_dict(self):
        return {
            "source": self.source,
            "egress_interface": self.egress_interface,
            "exclusions": list(self.exclusions),
        }


def forward_rules(cidr: str, egress: str) -> List[Rule]:
    """Host FORWARD accepts for VPC -> internet and established return traffic."""
    return [
        Rule.build("FORWARD", "-s", cidr, "-o", egress, "-j", "ACCEPT"),
        Rule.build("FORWARD", "-d", cidr, "-i", egress, "-m", "state",
                   "--state", "RELATED,ESTABLISHED", "-j", "ACCEPT"),
    ]


def _is_nat_rule_for(cidr: str):
    return lambda rule: rule.option("-s") == cidr and rule.target in NAT_TARGETS


class NatRuleManager:
    def __init__(self, store, netlink, iptables, egress_interface: Optional[str] = None):
        self.store = store
        self.netlink = netlink
        self.iptables = iptables
        self.egress_override = egress_interface

    def egress_interface(self) -> str:
        if self.egress_override:
            return self.egress_override
        interface = self.netlink.get_default_interface()
        if not interface:
            raise ResourceProviderError(
                "Host has no default route; cannot determine the internet-facing interface"
            )
        return interface

    def install_initial_rule(self, vpc) -> NatRule:
        """Build the NAT uplink for ``vpc`` and install its unrestricted rule."""
        host_end, bridge_end = nat_veth_names(vpc.name)
        egress = self.egress_interface()
        logger.info(f"Enabling NAT for VPC {vpc.name} via {egress}")

        self.netlink.create_veth_pair(host_end, bridge_end)
        self.netlink.attach_to_bridge(bridge_end, vpc.bridge)
        self.netlink.set_link_up(bridge_end)
        self.netlink.add_address(host_end, with_prefix(nat_host_ip(vpc.cidr), vpc.cidr))
        self.netlink.set_link_up(host_end)
        self.netlink.ensure_ip_forward()

        rule = self._replace(NatRule(vpc.cidr, egress))
        for forward in forward_rules(vpc.cidr, egress):
            self.iptables.ensure_rule(forward)
        return rule

    def recompute_rule(self, vpc, peer_cidrs: Iterable[str]) -> NatRule:
        """Replace the VPC's NAT unit with one excluding exactly ``peer_cidrs``."""
        rule = NatRule(vpc.cidr, self.egress_interface(), tuple(sorted(set(peer_cidrs))))
        logger.info(
            f"Recomputing NAT for VPC {vpc.name}: exclusions={list(rule.exclusions) or 'none'}"
        )
        return self._replace(rule)

    def refresh(self, vpc_name: str) -> Optional[NatRule]:
        """Recompute from the peering set currently recorded in state."""
        vpc = self.store.require_vpc(vpc_name)
        if not vpc.nat_enabled:
            return None
        peer_cidrs = []
        for peer_name in vpc.peerings:
            peer = self.store.get_vpc(peer_name)
            if peer is None:
                logger.warning(f"VPC {vpc_name} lists unknown peer {peer_name}; not excluded")
                continue
            peer_cidrs.append(peer.cidr)
        return self.recompute_rule(vpc, peer_cidrs)

    def _replace(self, rule: NatRule) -> NatRule:
        removed = self.iptables.delete_rules_where(NAT_CHAIN, _is_nat_rule_for(rule.source), table="nat")
        if not removed.ok:
            raise ResourceProviderError(
                f"Could not remove existing NAT rules for {rule.source}: "
                f"{'; '.join(r.detail for r in removed.failed)}"
            )
        for entry in rule.render():
            self.iptables.append_rule(entry)
        return rule

    def current_rule(self, cidr: str) -> Optional[NatRule]:
        """Read the live NAT projection for ``cidr`` back from the kernel."""
        rules = [r for r in self.iptables.list_rules(NAT_CHAIN, table="nat") if _is_nat_rule_for(cidr)(r)]
        masquerades = [r for r in rules if r.target == "MASQUERADE"]
        if not masquerades:
            return None
        if len(masquerades) > 1:
            raise StateInconsistency(
                f"{len(masquerades)} MASQUERADE rules found for {cidr}",
                expected=1,
                found=[str(r) for r in masquerades],
            )
        exclusions = tuple(sorted(r.option("-d") for r in rules if r.target == "RETURN"))
        return NatRule(cidr, masquerades[0].option("-o"), exclusions)

    def teardown_rule(self, cidr: str) -> TeardownReport:
        """Remove every NAT and FORWARD rule that references ``cidr``."""
        report = self.iptables.delete_rules_where(NAT_CHAIN, lambda r: r.option("-s") == cidr, table="nat")
        report.extend(self.iptables.delete_rules_where("FORWARD", lambda r: r.references(cidr)))
        return report

    def teardown_uplink(self, vpc_name: str) -> TeardownResult:
        host_end, _ = nat_veth_names(vpc_name)
        return self.netlink.delete_link(host_end)
