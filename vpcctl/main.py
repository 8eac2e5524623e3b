#!/usr/bin/env python3
"""
vpcctl - Main Entry Point

Command line for the VPC simulator. Every command maps to one operation in
``vpcctl.api.shared_api_logic``; ``serve`` starts the REST API instead.

Output is JSON on stdout. Exit codes: 0 success (including "already exists"
no-ops), 1 failure, 2 invalid input.
"""

import argparse
import json
import logging
import sys

import uvicorn

from .api import shared_api_logic as services
from .api.diagnostic_logger import configure_logging
from .api.shared_api_logic import get_control_plane
from .config import get_settings
from .exceptions import AlreadyExists, InvalidInput, StateInconsistency, VpcctlError
from .firewall.security_groups import load_rule_file

logger = logging.getLogger("vpcctl")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INVALID = 2


def _emit(payload, stream=None):
    print(json.dumps(payload, indent=2, default=str), file=stream or sys.stdout)


def _split_subnets(value: str):
    return [part.strip() for part in value.split(",") if part.strip()]


def cmd_create(cp, args):
    record = services.create_vpc_logic(cp, args.name, args.cidr, args.subnets, args.enable_nat)
    _emit(record.to_dict())
    return EXIT_OK


def cmd_list(cp, args):
    _emit(services.export_state_logic(cp))
    return EXIT_OK


def cmd_describe(cp, args):
    _emit(services.describe_vpc_logic(cp, args.name).to_dict())
    return EXIT_OK


def cmd_delete(cp, args):
    report = services.delete_vpc_logic(cp, args.name)
    _emit(report.to_dict())
    return EXIT_OK if report.ok else EXIT_FAILURE


def cmd_peer(cp, args):
    peered = services.peer_logic(cp, args.vpc1, args.vpc2)
    _emit({"vpcs": [args.vpc1, args.vpc2], "peered": True, "changed": peered})
    return EXIT_OK


def cmd_unpeer(cp, args):
    report = services.unpeer_logic(cp, args.vpc1, args.vpc2)
    _emit(report.to_dict())
    return EXIT_OK if report.ok else EXIT_FAILURE


def cmd_security(cp, args):
    if args.action == "apply":
        rule_set = load_rule_file(args.rules)
        _emit(services.apply_security_logic(cp, args.vpc, args.subnet, rule_set).to_dict())
    elif args.action == "clear":
        namespace = services.clear_security_logic(cp, args.vpc, args.subnet)
        _emit({"namespace": namespace, "cleared": True})
    else:
        _emit(services.show_security_logic(cp, args.vpc, args.subnet))
    return EXIT_OK


def cmd_subnet(cp, args):
    if args.action == "list":
        subnets = services.list_subnets_logic(cp, args.vpc)
        _emit([{"type": s.subnet_type, **s.to_dict()} for s in subnets])
        return EXIT_OK
    if args.action == "routes":
        _emit(services.subnet_routes_logic(cp, args.vpc, args.subnet))
    elif args.action == "interfaces":
        _emit(services.subnet_interfaces_logic(cp, args.vpc, args.subnet))
    else:
        report = services.subnet_connectivity_logic(cp, args.vpc, args.subnet)
        _emit(report.to_dict())
        return EXIT_OK if report.success else EXIT_FAILURE
    return EXIT_OK


def cmd_exec(cp, args):
    command = args.command[1:] if args.command[:1] == ["--"] else args.command
    if not command:
        raise InvalidInput("exec needs a command to run")
    result = services.exec_logic(cp, args.vpc, args.subnet, command, capture=False)
    return result.returncode


def cmd_validate(cp, args):
    report = services.validate_logic(cp, args.name)
    _emit(report.to_dict())
    return EXIT_OK if report.success else EXIT_FAILURE


def cmd_cleanup(cp, args):
    result = services.cleanup_logic(cp)
    _emit(result.to_dict())
    return EXIT_OK if result.ok else EXIT_FAILURE


def cmd_drift(cp, args):
    result = services.drift_logic(cp, args.name)
    _emit(result.to_dict())
    return EXIT_OK if result.success else EXIT_FAILURE


def cmd_serve(args):
    """Start the FastAPI REST API server."""
    from .api.rest_api_server import app

    port = args.port or get_settings().rest_port
    logger.info(f"Starting REST API on port {port}...")
    uvicorn.run(app, host=args.host, port=port, log_level="info")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vpcctl", description="Linux VPC simulator")
    subparsers = parser.add_subparsers(dest="command_name", required=True)

    create = subparsers.add_parser("create", help="Create a VPC")
    create.add_argument("--name", required=True, help="Name of the VPC")
    create.add_argument("--cidr", required=True, help="CIDR block for the VPC, e.g. 10.0.0.0/16")
    create.add_argument("--subnets", required=True, type=_split_subnets,
                        help="Comma-separated subnet types, e.g. public,private")
    create.add_argument("--enable-nat", action="store_true", help="Give the VPC internet access")
    create.set_defaults(handler=cmd_create)

    subparsers.add_parser("list", help="List all VPCs").set_defaults(handler=cmd_list)

    describe = subparsers.add_parser("describe", help="Show one VPC")
    describe.add_argument("--name", required=True, help="Name of the VPC")
    describe.set_defaults(handler=cmd_describe)

    delete = subparsers.add_parser("delete", help="Delete a VPC and all its resources")
    delete.add_argument("--name", required=True, help="Name of the VPC")
    delete.set_defaults(handler=cmd_delete)

    for name, handler, help_text in (("peer", cmd_peer, "Peer two VPCs"),
                                     ("unpeer", cmd_unpeer, "Remove a peering")):
        peering = subparsers.add_parser(name, help=help_text)
        peering.add_argument("--vpc1", required=True, help="First VPC name")
        peering.add_argument("--vpc2", required=True, help="Second VPC name")
        peering.set_defaults(handler=handler)

    security = subparsers.add_parser("security", help="Manage subnet security rules")
    security.add_argument("action", choices=["apply", "clear", "show"])
    security.add_argument("--vpc", required=True, help="VPC name")
    security.add_argument("--subnet", required=True, help="Subnet type")
    security.add_argument("--rules", help="JSON rules file (apply only)")
    security.set_defaults(handler=cmd_security)

    subnet = subparsers.add_parser("subnet", help="Inspect the subnets of a VPC")
    subnet.add_argument("action", choices=["list", "routes", "interfaces", "test"])
    subnet.add_argument("--vpc", required=True, help="VPC name")
    subnet.add_argument("--subnet", help="Subnet type (all actions but list)")
    subnet.set_defaults(handler=cmd_subnet)

    execute = subparsers.add_parser("exec", help="Run a command inside a subnet")
    execute.add_argument("--vpc", required=True, help="VPC name")
    execute.add_argument("--subnet", required=True, help="Subnet type")
    execute.add_argument("command", nargs=argparse.REMAINDER, help="Command to run (after --)")
    execute.set_defaults(handler=cmd_exec)

    validate = subparsers.add_parser("validate", help="Run connectivity checks on a VPC")
    validate.add_argument("--name", required=True, help="Name of the VPC")
    validate.set_defaults(handler=cmd_validate)

    subparsers.add_parser("cleanup", help="Delete every VPC").set_defaults(handler=cmd_cleanup)

    drift = subparsers.add_parser("drift", help="Compare recorded state with the kernel")
    drift.add_argument("--name", help="Limit the check to one VPC")
    drift.set_defaults(handler=cmd_drift)

    serve = subparsers.add_parser("serve", help="Start the REST API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=None)
    serve.set_defaults(handler=None)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(get_settings())

    if args.command_name == "serve":
        return cmd_serve(args)
    if args.command_name == "security" and args.action == "apply" and not args.rules:
        parser.error("security apply requires --rules")
    if args.command_name == "subnet" and args.action != "list" and not args.subnet:
        parser.error(f"subnet {args.action} requires --subnet")

    try:
        return args.handler(get_control_plane(), args)
    except AlreadyExists as e:
        logger.warning(str(e))
        _emit({"warning": str(e), "changed": False})
        return EXIT_OK
    except InvalidInput as e:
        _emit({"error": type(e).__name__, "detail": str(e)}, stream=sys.stderr)
        return EXIT_INVALID
    except StateInconsistency as e:
        _emit({"error": type(e).__name__, "detail": str(e), **e.details()}, stream=sys.stderr)
        return EXIT_FAILURE
    except VpcctlError as e:
        _emit({"error": type(e).__name__, "detail": str(e)}, stream=sys.stderr)
        return EXIT_FAILURE
    except OSError as e:
        logger.error(f"Cannot access vpcctl state: {e}")
        _emit({"error": type(e).__name__, "detail": str(e)}, stream=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
