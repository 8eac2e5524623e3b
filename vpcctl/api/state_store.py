"""
State Store

Authoritative record of every VPC, its subnets, NAT flag and peering set,
persisted with SQLAlchemy. Each public call runs in its own transaction, so a
read-modify-write inside one call is atomic; callers that chain several calls
hold the global lock (see ``vpcctl.locking``).

Records handed out are plain dataclasses, never live ORM objects.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..exceptions import (
    AlreadyExists,
    AlreadyPeered,
    InvalidInput,
    SubnetNotFound,
    VpcAlreadyExists,
    VpcNotFound,
)
from .models import VPC as VPCModel, Peering as PeeringModel, Subnet as SubnetModel

logger = logging.getLogger(__name__)


@dataclass
class SubnetRecord:
    subnet_type: str
    index: int
    cidr: str
    namespace: str
    veth: str
    veth_br: str
    host_ip: str
    gateway_ip: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cidr": self.cidr,
            "namespace": self.namespace,
            "veth": self.veth,
            "veth_br": self.veth_br,
            "host_ip": self.host_ip,
            "gateway_ip": self.gateway_ip,
            "index": self.index,
        }


@dataclass
class VpcRecord:
    name: str
    cidr: str
    bridge: str
    nat_enabled: bool
    created_at: Optional[datetime] = None
    subnets: Dict[str, SubnetRecord] = field(default_factory=dict)
    peerings: List[str] = field(default_factory=list)

    def subnet_list(self) -> List[SubnetRecord]:
        """Subnets in creation order."""
        return sorted(self.subnets.values(), key=lambda s: s.index)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "cidr": self.cidr,
            "bridge": self.bridge,
            "nat_enabled": self.nat_enabled,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "subnets": {s.subnet_type: s.to_dict() for s in self.subnet_list()},
            "peerings": list(self.peerings),
        }


def _subnet_record(subnet: SubnetModel) -> SubnetRecord:
    return SubnetRecord(
        subnet_type=subnet.subnet_type,
        index=subnet.position,
        cidr=subnet.cidr,
        namespace=subnet.namespace,
        veth=subnet.veth,
        veth_br=subnet.veth_br,
        host_ip=subnet.host_ip,
        gateway_ip=subnet.gateway_ip,
    )


class StateStore:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    @contextmanager
    def session_scope(self):
        """Provide a transactional scope around a series of operations."""
        session: Session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _peer_names(self, session: Session, name: str) -> List[str]:
        rows = (
            session.query(PeeringModel.peer_name)
            .filter(PeeringModel.vpc_name == name)
            .order_by(PeeringModel.peer_name)
            .all()
        )
        return [row[0] for row in rows]

    def _record(self, session: Session, vpc: VPCModel) -> VpcRecord:
        return VpcRecord(
            name=vpc.name,
            cidr=vpc.cidr,
            bridge=vpc.bridge,
            nat_enabled=bool(vpc.nat_enabled),
            created_at=vpc.created_at,
            subnets={s.subnet_type: _subnet_record(s) for s in vpc.subnets},
            peerings=self._peer_names(session, vpc.name),
        )

    # VPCs ------------------------------------------------------------------

    def vpc_exists(self, name: str) -> bool:
        with self.session_scope() as session:
            return session.get(VPCModel, name) is not None

    def get_vpc(self, name: str) -> Optional[VpcRecord]:
        with self.session_scope() as session:
            vpc = session.get(VPCModel, name)
            return self._record(session, vpc) if vpc else None

    def require_vpc(self, name: str) -> VpcRecord:
        record = self.get_vpc(name)
        if record is None:
            raise VpcNotFound(name)
        return record

    def list_vpcs(self) -> List[VpcRecord]:
        with self.session_scope() as session:
            vpcs = session.query(VPCModel).order_by(VPCModel.name).all()
            return [self._record(session, vpc) for vpc in vpcs]

    def vpc_names(self) -> List[str]:
        with self.session_scope() as session:
            return [row[0] for row in session.query(VPCModel.name).order_by(VPCModel.name).all()]

    def create_vpc(self, name: str, cidr: str, bridge: str, nat_enabled: bool) -> VpcRecord:
        try:
            with self.session_scope() as session:
                if session.get(VPCModel, name) is not None:
                    raise VpcAlreadyExists(name)
                vpc = VPCModel(name=name, cidr=cidr, bridge=bridge, nat_enabled=nat_enabled)
                session.add(vpc)
                session.flush()
                session.refresh(vpc)
                record = self._record(session, vpc)
        except IntegrityError:
            raise InvalidInput(f"CIDR {cidr} is already used by another VPC")
        logger.info(f"Recorded VPC {name} ({cidr})")
        return record

    def delete_vpc(self, name: str) -> bool:
        """Remove a VPC, its subnets and every peering row that mentions it."""
        with self.session_scope() as session:
            vpc = session.get(VPCModel, name)
            if vpc is None:
                return False
            session.query(PeeringModel).filter(
                (PeeringModel.vpc_name == name) | (PeeringModel.peer_name == name)
            ).delete(synchronize_session=False)
            session.delete(vpc)
        logger.info(f"Removed VPC {name} from state")
        return True

    # Subnets ---------------------------------------------------------------

    def next_subnet_index(self, vpc_name: str) -> int:
        with self.session_scope() as session:
            highest = (
                session.query(func.max(SubnetModel.position))
                .filter(SubnetModel.vpc_name == vpc_name)
                .scalar()
            )
            return (highest or 0) + 1

    def add_subnet(self, vpc_name: str, subnet: SubnetRecord) -> SubnetRecord:
        try:
            with self.session_scope() as session:
                if session.get(VPCModel, vpc_name) is None:
                    raise VpcNotFound(vpc_name)
                session.add(
                    SubnetModel(
                        vpc_name=vpc_name,
                        subnet_type=subnet.subnet_type,
                        position=subnet.index,
                        cidr=subnet.cidr,
                        namespace=subnet.namespace,
                        veth=subnet.veth,
                        veth_br=subnet.veth_br,
                        host_ip=subnet.host_ip,
                        gateway_ip=subnet.gateway_ip,
                    )
                )
        except IntegrityError:
            raise AlreadyExists(
                f"Subnet '{subnet.subnet_type}' (index {subnet.index}) already recorded in VPC '{vpc_name}'"
            )
        return subnet

    def get_subnet(self, vpc_name: str, subnet_type: str) -> Optional[SubnetRecord]:
        with self.session_scope() as session:
            subnet = (
                session.query(SubnetModel)
                .filter(SubnetModel.vpc_name == vpc_name, SubnetModel.subnet_type == subnet_type)
                .first()
            )
            return _subnet_record(subnet) if subnet else None

    def require_subnet(self, vpc_name: str, subnet_type: str) -> SubnetRecord:
        vpc = self.require_vpc(vpc_name)
        subnet = vpc.subnets.get(subnet_type)
        if subnet is None:
            raise SubnetNotFound(vpc_name, subnet_type, [s.subnet_type for s in vpc.subnet_list()])
        return subnet

    # Peerings --------------------------------------------------------------

    def get_peerings(self, name: str) -> List[str]:
        with self.session_scope() as session:
            return self._peer_names(session, name)

    def add_peering(self, vpc1: str, vpc2: str):
        """Record both directions of a peering in one transaction."""
        with self.session_scope() as session:
            for name in (vpc1, vpc2):
                if session.get(VPCModel, name) is None:
                    raise VpcNotFound(name)
            if session.get(PeeringModel, (vpc1, vpc2)) is not None:
                raise AlreadyPeered(vpc1, vpc2)
            session.add(PeeringModel(vpc_name=vpc1, peer_name=vpc2))
            session.add(PeeringModel(vpc_name=vpc2, peer_name=vpc1))
        logger.info(f"Recorded peering {vpc1} <-> {vpc2}")

    def remove_peering(self, vpc1: str, vpc2: str) -> bool:
        """Remove both directions of a peering in one transaction."""
        with self.session_scope() as session:
            removed = session.query(PeeringModel).filter(
                ((PeeringModel.vpc_name == vpc1) & (PeeringModel.peer_name == vpc2))
                | ((PeeringModel.vpc_name == vpc2) & (PeeringModel.peer_name == vpc1))
            ).delete(synchronize_session=False)
        if removed:
            logger.info(f"Removed peering {vpc1} <-> {vpc2} from state")
        return bool(removed)

    # Export ----------------------------------------------------------------

    def export_document(self) -> Dict[str, Any]:
        """The whole store in the reference ``{"vpcs": {...}}`` shape."""
        vpcs = {}
        for record in self.list_vpcs():
            entry = record.to_dict()
            entry.pop("name")
            vpcs[record.name] = entry
        return {"vpcs": vpcs}
