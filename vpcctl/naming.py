"""
Resource naming authority.

Kernel resources live in host-global namespaces, so every name is derived here
from the VPC name (and subnet type or peer) and nowhere else.

Contract:
- interface names never exceed ``IFNAMSIZ - 1`` (15) characters;
- each resource kind has its own shape (``-br`` suffix, ``br-``, ``vsi-``,
  ``vso-``, ``vnh-``, ``vnv-``, ``vpa-``, ``vpb-`` prefixes), so kinds never collide;
- within a kind, names are unique per input up to a 32-bit digest collision;
- namespace names are ``{vpc}-{type}-subnet``; subnet types cannot contain
  hyphens, so the split back into (vpc, type) is unambiguous.
"""

import hashlib
from typing import Dict, Tuple

IFNAMSIZ = 16
MAX_IFNAME = IFNAMSIZ - 1
DIGEST_LENGTH = 8


def _digest(*parts: str) -> str:
    return hashlib.sha1("\0".join(parts).encode()).hexdigest()[:DIGEST_LENGTH]


def bridge_name(vpc_name: str) -> str:
    readable = f"{vpc_name}-br"
    if len(readable) <= MAX_IFNAME:
        return readable
    return f"br-{_digest('bridge', vpc_name)}"


def namespace_name(vpc_name: str, subnet_type: str) -> str:
    return f"{vpc_name}-{subnet_type}-subnet"


def subnet_veth_names(vpc_name: str, subnet_type: str) -> Tuple[str, str]:
    """Return (inner, outer): inner moves into the namespace, outer joins the bridge."""
    digest = _digest("subnet", vpc_name, subnet_type)
    return f"vsi-{digest}", f"vso-{digest}"


def nat_veth_names(vpc_name: str) -> Tuple[str, str]:
    """Return (host end, bridge end) of the NAT uplink."""
    digest = _digest("nat", vpc_name)
    return f"vnh-{digest}", f"vnv-{digest}"


def peering_veth_names(vpc1: str, vpc2: str) -> Dict[str, str]:
    """Map each VPC of an unordered pair to the veth end attached to its bridge."""
    first, second = sorted((vpc1, vpc2))
    digest = _digest("peer", first, second)
    return {first: f"vpa-{digest}", second: f"vpb-{digest}"}
