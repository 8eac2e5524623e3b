"""
Deterministic address plan for a VPC.

Every subnet is a /24 addressed by its creation index inside the first two
octets of the VPC CIDR:

    VPC 10.0.0.0/16, index 1 -> 10.0.1.0/24 (gateway 10.0.1.1, host 10.0.1.10)

The bridge owns ``a.b.0.1`` at the VPC prefix and the host end of the NAT veth
owns ``a.b.0.254``.
"""

import ipaddress
import re
from typing import Iterable, List, Tuple

from .exceptions import InvalidCidr, InvalidInput

CIDR_PATTERN = re.compile(r"^(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})/(\d{1,2})$")
VPC_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9-]{0,31}$")
SUBNET_TYPE_PATTERN = re.compile(r"^[A-Za-z0-9_]{1,16}$")

MAX_SUBNETS = 254
MIN_VPC_PREFIX = 8
MAX_VPC_PREFIX = 16
GATEWAY_OCTET = 1
HOST_OCTET = 10
NAT_HOST_OCTET = 254


def parse_cidr(cidr: str) -> Tuple[List[int], int]:
    """Split ``a.b.c.d/p`` into octets and prefix, checking ranges."""
    match = CIDR_PATTERN.match(cidr or "")
    if not match:
        raise InvalidCidr(f"Invalid CIDR notation: {cidr!r}")
    octets = [int(part) for part in match.groups()[:4]]
    prefix = int(match.group(5))
    if any(octet > 255 for octet in octets):
        raise InvalidCidr(f"Invalid CIDR {cidr}: octets must be 0-255")
    if prefix > 32:
        raise InvalidCidr(f"Invalid CIDR {cidr}: prefix length must be 0-32")
    return octets, prefix


def _base(cidr: str, octets: int) -> str:
    parsed, _ = parse_cidr(cidr)
    return ".".join(str(o) for o in parsed[:octets])


def derive_subnet_cidr(vpc_cidr: str, index: int) -> str:
    if not 1 <= index <= MAX_SUBNETS:
        raise InvalidInput(f"Subnet index {index} out of range 1-{MAX_SUBNETS}")
    return f"{_base(vpc_cidr, 2)}.{index}.0/24"


def gateway_ip(subnet_cidr: str) -> str:
    return f"{_base(subnet_cidr, 3)}.{GATEWAY_OCTET}"


def host_ip(subnet_cidr: str) -> str:
    return f"{_base(subnet_cidr, 3)}.{HOST_OCTET}"


def prefix_length(cidr: str) -> int:
    return parse_cidr(cidr)[1]


def vpc_gateway_ip(vpc_cidr: str) -> str:
    """Address the bridge carries at the VPC-wide prefix."""
    return f"{_base(vpc_cidr, 2)}.0.{GATEWAY_OCTET}"


def nat_host_ip(vpc_cidr: str) -> str:
    """Address of the host-side end of the NAT veth pair."""
    return f"{_base(vpc_cidr, 2)}.0.{NAT_HOST_OCTET}"


def with_prefix(address: str, cidr: str) -> str:
    return f"{address}/{prefix_length(cidr)}"


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------

def validate_vpc_name(name: str) -> None:
    """
    Validate VPC name format.
    Must be alphanumeric with hyphens, 1-32 characters, starting alphanumeric.
    """
    if not VPC_NAME_PATTERN.match(name or ""):
        raise InvalidInput(
            f"Invalid VPC name: {name!r}. Must be 1-32 characters, "
            "containing only letters, numbers, and hyphens."
        )


def validate_vpc_cidr(cidr: str) -> str:
    """
    Validate a VPC CIDR and return it normalised to its network address.

    Subnets are derived from the first two octets as written, so those must
    already be the network's; only the last two may carry host bits.
    """
    octets, prefix = parse_cidr(cidr)
    if not MIN_VPC_PREFIX <= prefix <= MAX_VPC_PREFIX:
        raise InvalidCidr(
            f"VPC CIDR {cidr} must have a prefix between /{MIN_VPC_PREFIX} "
            f"and /{MAX_VPC_PREFIX} so that its /24 subnets fit inside it"
        )
    network = ipaddress.ip_network(cidr, strict=False)
    if list(network.network_address.packed[:2]) != octets[:2]:
        raise InvalidCidr(
            f"VPC CIDR {cidr} is not aligned to its /{prefix} network; "
            f"use {network} or a /16 such as {octets[0]}.{octets[1]}.0.0/16"
        )
    return str(network)


def validate_subnet_types(subnet_types: Iterable[str]) -> List[str]:
    types = list(subnet_types or [])
    if not types:
        raise InvalidInput("At least one subnet type is required")
    if len(types) > MAX_SUBNETS:
        raise InvalidInput(f"At most {MAX_SUBNETS} subnets are supported per VPC")
    seen = set()
    for subnet_type in types:
        if not SUBNET_TYPE_PATTERN.match(subnet_type or ""):
            raise InvalidInput(
                f"Invalid subnet type: {subnet_type!r}. Must be 1-16 characters, "
                "containing only letters, numbers, and underscores."
            )
        if subnet_type in seen:
            raise InvalidInput(f"Duplicate subnet type: {subnet_type}")
        seen.add(subnet_type)
    return types


def check_cidr_overlap(cidr: str, existing: Iterable[Tuple[str, str]]) -> None:
    """Reject ``cidr`` if it overlaps any (name, cidr) pair in ``existing``."""
    network = ipaddress.ip_network(cidr, strict=False)
    for other_name, other_cidr in existing:
        if network.overlaps(ipaddress.ip_network(other_cidr, strict=False)):
            raise InvalidInput(
                f"CIDR {cidr} overlaps with VPC '{other_name}' ({other_cidr})"
            )
