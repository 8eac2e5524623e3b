import pytest

from vpcctl.api.shared_api_logic import build_control_plane
from vpcctl.config import Settings

from fakes import FakeIPTablesManager, FakeNetlinkManager


@pytest.fixture
def settings(tmp_path):
    return Settings(
        state_dir=str(tmp_path),
        db_url=f"sqlite:///{tmp_path / 'state.db'}",
        lock_file=str(tmp_path / "vpcctl.lock"),
        log_file=None,
        probe_address="8.8.8.8",
    )


@pytest.fixture
def netlink():
    return FakeNetlinkManager()


@pytest.fixture
def iptables():
    return FakeIPTablesManager()


@pytest.fixture
def cp(settings, netlink, iptables):
    return build_control_plane(settings, netlink=netlink, iptables=iptables)


@pytest.fixture
def store(cp):
    return cp.store


@pytest.fixture
def vpc_a(cp):
    """vA 10.0.0.0/16 with public and private subnets and NAT enabled."""
    return cp.topology.create_vpc("vA", "10.0.0.0/16", ["public", "private"], nat_enabled=True)


@pytest.fixture
def vpc_b(cp):
    """vB 172.16.0.0/16 with a public subnet and NAT enabled."""
    return cp.topology.create_vpc("vB", "172.16.0.0/16", ["public"], nat_enabled=True)
