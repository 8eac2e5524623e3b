import fcntl

import pytest
from prometheus_client import REGISTRY

from vpcctl.api import shared_api_logic as services
from vpcctl.exceptions import StateInconsistency, VpcAlreadyExists, VpcNotFound


def sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0


def try_lock(path, mode):
    """Attempt a non-blocking flock from a separate descriptor."""
    with open(path, "a+") as handle:
        try:
            fcntl.flock(handle.fileno(), mode | fcntl.LOCK_NB)
        except BlockingIOError:
            return False
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        return True


def test_create_records_metrics(cp):
    before = sample("vpcctl_operations_total", operation="create", outcome="success")
    services.create_vpc_logic(cp, "vA", "10.0.0.0/16", ["public", "private"], True)

    assert sample("vpcctl_operations_total", operation="create", outcome="success") == before + 1
    assert sample("vpcctl_vpcs_total") == 1
    assert sample("vpcctl_subnets_total") == 2


def test_duplicate_create_is_noop(cp):
    services.create_vpc_logic(cp, "vA", "10.0.0.0/16", ["public"])
    before = sample("vpcctl_operations_total", operation="create", outcome="noop")
    with pytest.raises(VpcAlreadyExists):
        services.create_vpc_logic(cp, "vA", "10.0.0.0/16", ["public"])
    assert sample("vpcctl_operations_total", operation="create", outcome="noop") == before + 1


def test_failure_outcome(cp):
    before = sample("vpcctl_operations_total", operation="describe", outcome="failure")
    with pytest.raises(VpcNotFound):
        services.describe_vpc_logic(cp, "ghost")
    assert sample("vpcctl_operations_total", operation="describe", outcome="failure") == before + 1


def test_mutations_hold_exclusive_lock(cp, monkeypatch):
    seen = {}
    create = cp.topology.create_vpc

    def observing_create(*args, **kwargs):
        seen["shared"] = try_lock(cp.settings.lock_file, fcntl.LOCK_SH)
        return create(*args, **kwargs)

    monkeypatch.setattr(cp.topology, "create_vpc", observing_create)
    services.create_vpc_logic(cp, "vA", "10.0.0.0/16", ["public"])
    assert seen == {"shared": False}
    assert try_lock(cp.settings.lock_file, fcntl.LOCK_EX)


def test_reads_hold_shared_lock(vpc_a, cp, monkeypatch):
    seen = {}
    list_vpcs = cp.store.list_vpcs

    def observing_list():
        seen["shared"] = try_lock(cp.settings.lock_file, fcntl.LOCK_SH)
        seen["exclusive"] = try_lock(cp.settings.lock_file, fcntl.LOCK_EX)
        return list_vpcs()

    monkeypatch.setattr(cp.store, "list_vpcs", observing_list)
    assert [v.name for v in services.list_vpcs_logic(cp)] == ["vA"]
    assert seen == {"shared": True, "exclusive": False}


def test_exec_runs_outside_the_lock(vpc_a, cp, netlink, monkeypatch):
    seen = {}
    execute = netlink.exec_in_namespace

    def observing_exec(namespace, command, capture=True, bounded=True):
        seen["exclusive"] = try_lock(cp.settings.lock_file, fcntl.LOCK_EX)
        return execute(namespace, command, capture=capture, bounded=bounded)

    monkeypatch.setattr(netlink, "exec_in_namespace", observing_exec)
    result = services.exec_logic(cp, "vA", "public", ["ip", "addr"])

    assert result.returncode == 0
    assert seen == {"exclusive": True}
    assert netlink.executed[-1] == (vpc_a.subnets["public"].namespace, ["ip", "addr"])
    assert netlink.bounded[-1] is False


def test_exec_checks_namespace(vpc_a, cp, netlink):
    netlink.delete_namespace(vpc_a.subnets["public"].namespace)
    with pytest.raises(StateInconsistency):
        services.exec_logic(cp, "vA", "public", ["ip", "addr"])
    assert netlink.executed == []


def test_delete_counts_teardown_results(vpc_a, cp):
    before = sample("vpcctl_teardown_results_total", status="deleted")
    report = services.delete_vpc_logic(cp, "vA")
    assert sample("vpcctl_teardown_results_total", status="deleted") == before + len(report.deleted)
    assert sample("vpcctl_vpcs_total") == 0


def test_peering_services(vpc_a, vpc_b, cp):
    assert services.peer_logic(cp, "vA", "vB") is True
    assert services.list_peerings_logic(cp) == [("vA", "vB")]
    assert sample("vpcctl_peerings_total") == 1
    assert services.unpeer_logic(cp, "vA", "vB").ok
    assert services.list_peerings_logic(cp) == []


def test_drift_for_all_vpcs(vpc_a, vpc_b, cp):
    assert services.drift_logic(cp).success


def test_list_subnets_in_creation_order(vpc_a, cp):
    subnets = services.list_subnets_logic(cp, "vA")
    assert [(s.subnet_type, s.cidr) for s in subnets] == [("public", "10.0.1.0/24"), ("private", "10.0.2.0/24")]
    with pytest.raises(VpcNotFound):
        services.list_subnets_logic(cp, "ghost")


def test_subnet_routes_and_interfaces(vpc_a, cp):
    private = vpc_a.subnets["private"]

    routes = services.subnet_routes_logic(cp, "vA", "private")
    assert routes["namespace"] == private.namespace
    destinations = [r["dst"] for r in routes["routes"]]
    assert "10.0.0.0/16" in destinations and "default" not in destinations

    interfaces = services.subnet_interfaces_logic(cp, "vA", "private")
    assert interfaces["interfaces"] == [{"name": private.veth, "addresses": ["10.0.2.10/24"]}]


def test_subnet_inspection_holds_shared_lock(vpc_a, cp, netlink, monkeypatch):
    seen = {}
    get_routes = netlink.get_routes

    def observing_routes(namespace=None):
        seen["shared"] = try_lock(cp.settings.lock_file, fcntl.LOCK_SH)
        seen["exclusive"] = try_lock(cp.settings.lock_file, fcntl.LOCK_EX)
        return get_routes(namespace=namespace)

    monkeypatch.setattr(netlink, "get_routes", observing_routes)
    services.subnet_routes_logic(cp, "vA", "public")
    assert seen == {"shared": True, "exclusive": False}


def test_subnet_inspection_checks_namespace(vpc_a, cp, netlink):
    netlink.delete_namespace(vpc_a.subnets["public"].namespace)
    for operation in (services.subnet_routes_logic, services.subnet_interfaces_logic,
                      services.subnet_connectivity_logic):
        with pytest.raises(StateInconsistency):
            operation(cp, "vA", "public")
    assert netlink.executed == []


def test_subnet_connectivity_records_metrics(vpc_a, cp):
    before = sample("vpcctl_operations_total", operation="subnet-test", outcome="success")
    assert services.subnet_connectivity_logic(cp, "vA", "public").success
    assert sample("vpcctl_operations_total", operation="subnet-test", outcome="success") == before + 1
