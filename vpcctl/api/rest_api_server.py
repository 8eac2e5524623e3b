# File: vpcctl/api/rest_api_server.py
#!/usr/bin/env python3
"""
vpcctl REST API Server

FastAPI-based REST API over the same operations as the command line:
- VPCs (create, list, describe, delete)
- Peerings
- Subnet inspection (listing, routes, interfaces, connectivity)
- Subnet security rules
- Validation, drift detection and cleanup
"""

import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from ..exceptions import (
    AlreadyExists,
    AlreadyPeered,
    InvalidInput,
    NotFound,
    ResourceProviderError,
    StateInconsistency,
    VpcctlError,
)
from ..firewall.security_groups import load_rule_set
from ..metrics import METRICS
from . import shared_api_logic as services
from .shared_api_logic import ControlPlane, get_control_plane

logger = logging.getLogger(__name__)

app = FastAPI(
    title="vpcctl API",
    description="Linux VPC simulator: bridges, namespaces, NAT and peering",
    version="1.0.0",
)

ERROR_STATUS = [
    (InvalidInput, 400),
    (NotFound, 404),
    (StateInconsistency, 409),
    (ResourceProviderError, 502),
]


def status_for(exc: VpcctlError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 500


@app.exception_handler(VpcctlError)
async def vpcctl_error_handler(request: Request, exc: VpcctlError):
    if isinstance(exc, AlreadyExists):
        logger.warning(str(exc))
        return JSONResponse(status_code=200, content={"warning": str(exc), "changed": False})
    content = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, StateInconsistency):
        content.update(exc.details())
    return JSONResponse(status_code=status_for(exc), content=content)


@app.middleware("http")
async def prometheus_middleware(request: Request, call_next):
    METRICS["api_requests"].labels(method=request.method, endpoint=request.url.path).inc()
    start = time.time()
    response = await call_next(request)
    logger.debug(f"{request.method} {request.url.path} took {(time.time() - start) * 1000:.1f}ms")
    return response


class VPCCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=32)
    cidr: str
    subnets: List[str]
    nat: bool = False


class Subnet(BaseModel):
    cidr: str
    namespace: str
    veth: str
    veth_br: str
    host_ip: str
    gateway_ip: str
    index: int


class VPC(BaseModel):
    name: str
    cidr: str
    bridge: str
    nat_enabled: bool
    created_at: Optional[datetime] = None
    subnets: Dict[str, Subnet]
    peerings: List[str]


class PeeringRequest(BaseModel):
    vpc1: str
    vpc2: str


@app.get("/health")
def health():
    return {"status": "healthy"}


@app.get("/metrics")
def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.post("/vpcs", response_model=VPC, status_code=201)
def create_vpc(vpc: VPCCreate, cp: ControlPlane = Depends(get_control_plane)):
    record = services.create_vpc_logic(cp, vpc.name, vpc.cidr, vpc.subnets, vpc.nat)
    return record.to_dict()


@app.get("/vpcs", response_model=List[VPC])
def list_vpcs(cp: ControlPlane = Depends(get_control_plane)):
    return [record.to_dict() for record in services.list_vpcs_logic(cp)]


@app.get("/vpcs/{name}", response_model=VPC)
def get_vpc(name: str, cp: ControlPlane = Depends(get_control_plane)):
    return services.describe_vpc_logic(cp, name).to_dict()


@app.delete("/vpcs/{name}")
def delete_vpc(name: str, cp: ControlPlane = Depends(get_control_plane)):
    report = services.delete_vpc_logic(cp, name)
    return JSONResponse(status_code=200 if report.ok else 502, content=report.to_dict())


@app.get("/state")
def export_state(cp: ControlPlane = Depends(get_control_plane)):
    return services.export_state_logic(cp)


@app.post("/peerings", status_code=201)
def create_peering(peering: PeeringRequest, cp: ControlPlane = Depends(get_control_plane)):
    vpcs = [peering.vpc1, peering.vpc2]
    if not services.peer_logic(cp, peering.vpc1, peering.vpc2):
        warning = str(AlreadyPeered(peering.vpc1, peering.vpc2))
        return JSONResponse(
            status_code=200,
            content={"vpcs": vpcs, "peered": True, "changed": False, "warning": warning},
        )
    return {"vpcs": vpcs, "peered": True, "changed": True}


@app.get("/peerings")
def list_peerings(cp: ControlPlane = Depends(get_control_plane)):
    return [{"vpcs": list(pair)} for pair in services.list_peerings_logic(cp)]


@app.delete("/peerings/{vpc1}/{vpc2}")
def delete_peering(vpc1: str, vpc2: str, cp: ControlPlane = Depends(get_control_plane)):
    report = services.unpeer_logic(cp, vpc1, vpc2)
    return JSONResponse(status_code=200 if report.ok else 502, content=report.to_dict())


@app.get("/vpcs/{name}/subnets")
def list_subnets(name: str, cp: ControlPlane = Depends(get_control_plane)):
    return [{"type": s.subnet_type, **s.to_dict()} for s in services.list_subnets_logic(cp, name)]


@app.get("/vpcs/{name}/subnets/{subnet_type}/routes")
def subnet_routes(name: str, subnet_type: str, cp: ControlPlane = Depends(get_control_plane)):
    return services.subnet_routes_logic(cp, name, subnet_type)


@app.get("/vpcs/{name}/subnets/{subnet_type}/interfaces")
def subnet_interfaces(name: str, subnet_type: str, cp: ControlPlane = Depends(get_control_plane)):
    return services.subnet_interfaces_logic(cp, name, subnet_type)


@app.get("/vpcs/{name}/subnets/{subnet_type}/connectivity")
def subnet_connectivity(name: str, subnet_type: str, cp: ControlPlane = Depends(get_control_plane)):
    return services.subnet_connectivity_logic(cp, name, subnet_type).to_dict()


@app.put("/vpcs/{name}/subnets/{subnet_type}/security")
def apply_security(
    name: str,
    subnet_type: str,
    rules: Dict[str, Any] = Body(...),
    cp: ControlPlane = Depends(get_control_plane),
):
    rule_set = load_rule_set(rules)
    return services.apply_security_logic(cp, name, subnet_type, rule_set).to_dict()


@app.get("/vpcs/{name}/subnets/{subnet_type}/security")
def show_security(name: str, subnet_type: str, cp: ControlPlane = Depends(get_control_plane)):
    return services.show_security_logic(cp, name, subnet_type)


@app.delete("/vpcs/{name}/subnets/{subnet_type}/security")
def clear_security(name: str, subnet_type: str, cp: ControlPlane = Depends(get_control_plane)):
    namespace = services.clear_security_logic(cp, name, subnet_type)
    return {"namespace": namespace, "cleared": True}


@app.get("/vpcs/{name}/validate")
def validate_vpc(name: str, cp: ControlPlane = Depends(get_control_plane)):
    return services.validate_logic(cp, name).to_dict()


@app.get("/drift")
def drift(vpc: Optional[str] = None, cp: ControlPlane = Depends(get_control_plane)):
    return services.drift_logic(cp, vpc).to_dict()


@app.post("/cleanup")
def cleanup(cp: ControlPlane = Depends(get_control_plane)):
    result = services.cleanup_logic(cp)
    return JSONResponse(status_code=200 if result.ok else 502, content=result.to_dict())
