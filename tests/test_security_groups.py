import json

import pytest

from vpcctl.exceptions import InvalidInput, StateInconsistency, SubnetNotFound
from vpcctl.firewall.security_groups import (
    BASE_RULES,
    SecurityRule,
    load_rule_file,
    load_rule_set,
)

WEB_RULES = {
    "subnet": "public",
    "ingress": [
        {"port": 80, "protocol": "tcp", "action": "allow"},
        {"port": 22, "protocol": "tcp", "action": "deny"},
    ],
}


def input_rules(iptables, namespace):
    return [" ".join(r.spec) for r in iptables.list_rules("INPUT", namespace=namespace)]


def test_apply_web_rules(vpc_a, cp, iptables):
    ns = vpc_a.subnets["public"].namespace
    result = cp.security.apply_rules("vA", "public", load_rule_set(WEB_RULES))

    assert result.namespace == ns
    assert result.skipped == []
    assert iptables.get_policy("INPUT", namespace=ns) == "DROP"
    assert iptables.get_policy("FORWARD", namespace=ns) == "DROP"
    assert iptables.get_policy("OUTPUT", namespace=ns) == "ACCEPT"

    rules = input_rules(iptables, ns)
    assert rules[:3] == [" ".join(r.spec) for r in BASE_RULES]
    accept_80 = rules.index("-p tcp -m tcp --dport 80 -j ACCEPT")
    drop_22 = rules.index("-p tcp -m tcp --dport 22 -j DROP")
    assert accept_80 < drop_22


def test_apply_does_not_touch_other_subnets(vpc_a, cp, iptables):
    cp.security.apply_rules("vA", "public", load_rule_set(WEB_RULES))
    private_ns = vpc_a.subnets["private"].namespace
    assert iptables.get_policy("INPUT", namespace=private_ns) == "ACCEPT"
    assert input_rules(iptables, private_ns) == []


def test_reapply_replaces_instead_of_appending(vpc_a, cp, iptables):
    ns = vpc_a.subnets["public"].namespace
    cp.security.apply_rules("vA", "public", load_rule_set(WEB_RULES))
    first = input_rules(iptables, ns)
    cp.security.apply_rules("vA", "public", load_rule_set(WEB_RULES))
    assert input_rules(iptables, ns) == first


def test_egress_rules_go_to_output(vpc_a, cp, iptables):
    rule_set = load_rule_set({
        "ingress": [],
        "egress": [{"port": 53, "protocol": "UDP", "action": "Allow"}],
    })
    ns = vpc_a.subnets["public"].namespace
    cp.security.apply_rules("vA", "public", rule_set)
    output = [" ".join(r.spec) for r in iptables.list_rules("OUTPUT", namespace=ns)]
    assert output == ["-p udp -m udp --dport 53 -j ACCEPT"]


def test_unknown_action_is_skipped(vpc_a, cp, iptables):
    rule_set = load_rule_set({"ingress": [
        {"port": 443, "protocol": "tcp", "action": "reject"},
        {"port": 80, "protocol": "tcp", "action": "allow"},
    ]})
    result = cp.security.apply_rules("vA", "public", rule_set)

    assert result.skipped == [{"direction": "ingress", "port": 443, "protocol": "tcp", "action": "reject"}]
    rules = input_rules(iptables, vpc_a.subnets["public"].namespace)
    assert not any("443" in r for r in rules)
    assert "-p tcp -m tcp --dport 80 -j ACCEPT" in rules


def test_clear_restores_accept(vpc_a, cp, iptables):
    cp.security.apply_rules("vA", "public", load_rule_set(WEB_RULES))
    ns = cp.security.clear_rules("vA", "public")

    for chain in ("INPUT", "FORWARD", "OUTPUT"):
        assert iptables.get_policy(chain, namespace=ns) == "ACCEPT"
    assert iptables.all_rules(namespace=ns) == []


def test_show_rules(vpc_a, cp):
    cp.security.apply_rules("vA", "public", load_rule_set(WEB_RULES))
    shown = cp.security.show_rules("vA", "public")

    assert shown["namespace"] == vpc_a.subnets["public"].namespace
    assert shown["policies"] == {"INPUT": "DROP", "FORWARD": "DROP", "OUTPUT": "ACCEPT"}
    assert "-p tcp -m tcp --dport 22 -j DROP" in shown["rules"]["INPUT"]
    assert shown["rules"]["OUTPUT"] == []


def test_missing_namespace_is_inconsistency(vpc_a, cp, netlink):
    ns = vpc_a.subnets["public"].namespace
    netlink.delete_namespace(ns)
    with pytest.raises(StateInconsistency) as excinfo:
        cp.security.apply_rules("vA", "public", load_rule_set(WEB_RULES))
    assert excinfo.value.expected == ns
    assert ns not in excinfo.value.found


def test_unknown_subnet(vpc_a, cp):
    with pytest.raises(SubnetNotFound):
        cp.security.show_rules("vA", "database")


@pytest.mark.parametrize("data", [
    {"egress": []},
    {"ingress": [{"port": 0, "protocol": "tcp", "action": "allow"}]},
    {"ingress": [{"port": 80, "protocol": "icmp", "action": "allow"}]},
    {"ingress": [{"protocol": "tcp", "action": "allow"}]},
    ["not", "an", "object"],
])
def test_invalid_rule_sets(data):
    with pytest.raises(InvalidInput):
        load_rule_set(data)


def test_rule_normalisation():
    rule = SecurityRule(port=8080, protocol=" TCP ", action="DENY")
    assert rule.to_rule("INPUT").spec == ("-p", "tcp", "-m", "tcp", "--dport", "8080", "-j", "DROP")


def test_load_rule_file(tmp_path):
    path = tmp_path / "rules.json"
    path.write_text(json.dumps(WEB_RULES))
    rule_set = load_rule_file(str(path))
    assert rule_set.subnet == "public"
    assert [r.port for r in rule_set.ingress] == [80, 22]
    assert rule_set.egress is None


def test_load_rule_file_errors(tmp_path):
    with pytest.raises(InvalidInput, match="Cannot read"):
        load_rule_file(str(tmp_path / "missing.json"))
    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    with pytest.raises(InvalidInput, match="Invalid JSON"):
        load_rule_file(str(bad))
