# file: models.py

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    func,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

Base = declarative_base()


class VPC(Base):
    __tablename__ = "vpcs"
    name = Column(String, primary_key=True)
    cidr = Column(String, unique=True, nullable=False)
    bridge = Column(String, nullable=False)
    nat_enabled = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    subnets = relationship(
        "Subnet",
        back_populates="vpc",
        cascade="all, delete-orphan",
        order_by="Subnet.position",
    )


class Subnet(Base):
    __tablename__ = "subnets"
    __table_args__ = (
        UniqueConstraint("vpc_name", "subnet_type", name="uq_subnet_type"),
        UniqueConstraint("vpc_name", "position", name="uq_subnet_position"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    vpc_name = Column(String, ForeignKey("vpcs.name", ondelete="CASCADE"), nullable=False)
    subnet_type = Column(String, nullable=False)
    position = Column(Integer, nullable=False)  # 1-based creation index
    cidr = Column(String, nullable=False)
    namespace = Column(String, nullable=False)
    veth = Column(String, nullable=False)
    veth_br = Column(String, nullable=False)
    host_ip = Column(String, nullable=False)
    gateway_ip = Column(String, nullable=False)

    vpc = relationship("VPC", back_populates="subnets")


class Peering(Base):
    """One direction of a symmetric peering; always written in pairs."""

    __tablename__ = "peerings"
    vpc_name = Column(String, ForeignKey("vpcs.name", ondelete="CASCADE"), primary_key=True)
    peer_name = Column(String, ForeignKey("vpcs.name", ondelete="CASCADE"), primary_key=True)
    created_at = Column(DateTime, server_default=func.now())


def make_session_factory(db_url: str):
    """Create the engine and tables for ``db_url`` and return a session factory."""
    connect_args = {"check_same_thread": False} if db_url.startswith("sqlite") else {}
    engine = create_engine(db_url, connect_args=connect_args)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autoflush=False, bind=engine)
