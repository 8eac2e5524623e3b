#!/usr/bin/env python3
"""
Security Groups / Firewall Controller

Translates a declarative subnet rule set into iptables state inside the
subnet's namespace:
- default-deny on INPUT and FORWARD, default-allow on OUTPUT
- established/related, loopback and ICMP always accepted
- ingress entries appended to INPUT, egress entries to OUTPUT, in the
  order given (first match wins)

Rule set format:

    {"subnet": "public",
     "ingress": [{"port": 80, "protocol": "tcp", "action": "allow"}],
     "egress": [{"port": 53, "protocol": "udp", "action": "allow"}]}

``egress`` is optional. ``deny`` entries are emitted as explicit DROP rules so
that rule listings show every entry; unknown actions are skipped and reported.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..exceptions import InvalidInput
from ..netlink.netlink_manager import Rule
from ..reconciler.reconciler import verify_namespace

logger = logging.getLogger(__name__)

PORT_PROTOCOLS = {"tcp", "udp", "sctp", "dccp", "udplite"}
ACTION_TARGETS = {"allow": "ACCEPT", "deny": "DROP"}
CHAINS = ("INPUT", "FORWARD", "OUTPUT")

BASE_RULES = [
    Rule.build("INPUT", "-m", "state", "--state", "RELATED,ESTABLISHED", "-j", "ACCEPT"),
    Rule.build("INPUT", "-i", "lo", "-j", "ACCEPT"),
    Rule.build("INPUT", "-p", "icmp", "-j", "ACCEPT"),
]


class SecurityRule(BaseModel):
    port: int = Field(..., ge=1, le=65535)
    protocol: str
    action: str

    @field_validator("protocol")
    @classmethod
    def check_protocol(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in PORT_PROTOCOLS:
            raise ValueError(f"protocol must be one of {sorted(PORT_PROTOCOLS)}")
        return value

    @field_validator("action")
    @classmethod
    def normalise_action(cls, value: str) -> str:
        return value.strip().lower()

    def to_rule(self, chain: str) -> Optional[Rule]:
        """The iptables rule for this entry, or None for an unknown action."""
        target = ACTION_TARGETS.get(self.action)
        if target is None:
            return None
        return Rule.build(chain, "-p", self.protocol, "-m", self.protocol,
                          "--dport", str(self.port), "-j", target)


class SecurityRuleSet(BaseModel):
    subnet: Optional[str] = None
    ingress: List[SecurityRule]
    egress: Optional[List[SecurityRule]] = None


def load_rule_set(data: Any) -> SecurityRuleSet:
    try:
        return SecurityRuleSet.model_validate(data)
    except ValidationError as e:
        raise InvalidInput(f"Invalid security rule set: {e}") from e


def load_rule_file(path: str) -> SecurityRuleSet:
    try:
        with open(path) as f:
            data = json.load(f)
    except OSError as e:
        raise InvalidInput(f"Cannot read rules file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise InvalidInput(f"Invalid JSON in rules file {path}: {e}") from e
    return load_rule_set(data)


@dataclass
class PolicyResult:
    namespace: str
    installed: List[str] = field(default_factory=list)
    skipped: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self):
        return {"namespace": self.namespace, "installed": self.installed, "skipped": self.skipped}


class SecurityPolicyApplier:
    def __init__(self, store, netlink, iptables):
        self.store = store
        self.netlink = netlink
        self.iptables = iptables

    def _namespace(self, vpc_name: str, subnet_type: str) -> str:
        return verify_namespace(self.store, self.netlink, vpc_name, subnet_type)

    def apply_rules(self, vpc_name: str, subnet_type: str, rule_set: SecurityRuleSet) -> PolicyResult:
        namespace = self._namespace(vpc_name, subnet_type)
        result = PolicyResult(namespace=namespace)
        logger.info(f"Applying security rules to {namespace}")

        self.iptables.flush(namespace=namespace)
        self.iptables.set_policy("INPUT", "DROP", namespace=namespace)
        self.iptables.set_policy("FORWARD", "DROP", namespace=namespace)
        self.iptables.set_policy("OUTPUT", "ACCEPT", namespace=namespace)

        for rule in BASE_RULES:
            self.iptables.append_rule(rule, namespace=namespace)
            result.installed.append(str(rule))

        sections = [("ingress", "INPUT", rule_set.ingress), ("egress", "OUTPUT", rule_set.egress or [])]
        for direction, chain, entries in sections:
            for entry in entries:
                rule = entry.to_rule(chain)
                if rule is None:
                    logger.warning(
                        f"Unknown action '{entry.action}' for {entry.protocol}/{entry.port}, skipping"
                    )
                    result.skipped.append({"direction": direction, **entry.model_dump()})
                    continue
                logger.info(f"Rule: {direction} {entry.protocol}/{entry.port} -> {entry.action}")
                self.iptables.append_rule(rule, namespace=namespace)
                result.installed.append(str(rule))
        return result

    def clear_rules(self, vpc_name: str, subnet_type: str) -> str:
        """Flush all rules and chains and reset every policy to ACCEPT."""
        namespace = self._namespace(vpc_name, subnet_type)
        logger.info(f"Clearing security rules from {namespace}")
        self.iptables.flush(namespace=namespace)
        for chain in CHAINS:
            self.iptables.set_policy(chain, "ACCEPT", namespace=namespace)
        return namespace

    def show_rules(self, vpc_name: str, subnet_type: str) -> Dict[str, Any]:
        namespace = self._namespace(vpc_name, subnet_type)
        return {
            "namespace": namespace,
            "policies": {chain: self.iptables.get_policy(chain, namespace=namespace) for chain in CHAINS},
            "rules": {
                chain: [" ".join(rule.spec) for rule in self.iptables.list_rules(chain, namespace=namespace)]
                for chain in CHAINS
            },
        }
