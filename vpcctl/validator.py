#!/usr/bin/env python3
"""
VPC Validation

Live, read-only checks of a VPC's data path:
- Inter-subnet reachability (first subnet pings the second's host)
- Internet access for public subnets and isolation for private subnets
  (only when NAT is enabled)
- Non-empty routing table in every subnet

``check_subnet`` runs the same pings from a single subnet towards every other
subnet in the VPC.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .api.diagnostic_logger import DiagnosticLogger
from .exceptions import ResourceProviderError

logger = logging.getLogger(__name__)

PING_COUNT = 3
PING_WAIT_SECONDS = 2


@dataclass
class ValidationResult:
    """Result of a single validation check."""
    name: str
    passed: bool
    message: str
    details: Dict[str, Any] = None


@dataclass
class ValidationReport:
    """Full validation report for one VPC."""
    vpc: str
    results: List[ValidationResult] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    diagnostics: Optional[Dict[str, Any]] = None

    @property
    def passed(self) -> int:
        return sum(1 for r in self.results if r.passed)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.passed)

    @property
    def success(self) -> bool:
        return self.failed == 0

    def to_dict(self):
        return {
            "vpc": self.vpc,
            "success": self.success,
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
            "diagnostics": self.diagnostics,
            "results": [
                {"name": r.name, "passed": r.passed, "message": r.message, "details": r.details or {}}
                for r in self.results
            ],
        }


class Validator:
    def __init__(self, store, netlink, probe_address: str = "8.8.8.8"):
        self.store = store
        self.netlink = netlink
        self.probe_address = probe_address

    def _ping(self, namespace: str, target: str, diag: DiagnosticLogger) -> bool:
        try:
            result = self.netlink.exec_in_namespace(
                namespace, ["ping", "-c", str(PING_COUNT), "-W", str(PING_WAIT_SECONDS), target]
            )
        except ResourceProviderError as e:
            diag.log_warning(f"ping {target} from {namespace} did not complete", {"error": str(e)})
            return False
        return result.returncode == 0

    def _internet_result(self, subnet, diag: DiagnosticLogger) -> Optional[ValidationResult]:
        """Public subnets must reach the internet address, private ones must not."""
        if subnet.subnet_type not in ("public", "private"):
            return None
        reachable = self._ping(subnet.namespace, self.probe_address, diag)
        if subnet.subnet_type == "public":
            passed = reachable
            message = f"public subnet {'has' if reachable else 'has NO'} internet access"
        else:
            passed = not reachable
            message = ("private subnet correctly isolated" if passed
                       else "private subnet has internet (should be isolated)")
        return ValidationResult(
            name=f"internet-{subnet.subnet_type}",
            passed=passed,
            message=message,
            details={"namespace": subnet.namespace, "probe": self.probe_address},
        )

    def _finish(self, report: ValidationReport, diag: DiagnosticLogger) -> ValidationReport:
        for result in report.results:
            if not result.passed:
                diag.log_error(result.message, result.details)
        if diag.has_errors:
            diag.log_host_status(self.netlink)
            report.diagnostics = diag.generate_report()
        else:
            diag.log_success("All validation tests passed")
        return report

    def validate(self, vpc_name: str) -> ValidationReport:
        vpc = self.store.require_vpc(vpc_name)
        subnets = vpc.subnet_list()
        report = ValidationReport(vpc=vpc_name)
        diag = DiagnosticLogger(f"validate {vpc_name}")

        # Inter-subnet connectivity
        if len(subnets) >= 2:
            first, second = subnets[0], subnets[1]
            reachable = self._ping(first.namespace, second.host_ip, diag)
            report.results.append(ValidationResult(
                name="inter-subnet",
                passed=reachable,
                message=f"{first.subnet_type} {'can' if reachable else 'CANNOT'} reach {second.subnet_type}",
                details={"from": first.namespace, "to": second.host_ip},
            ))
        else:
            report.skipped.append("inter-subnet (need at least 2 subnets)")

        # Internet access and private isolation
        if vpc.nat_enabled:
            for subnet in subnets:
                result = self._internet_result(subnet, diag)
                if result is not None:
                    report.results.append(result)
        else:
            report.skipped.append("internet access (NAT not enabled)")

        # Routing tables
        for subnet in subnets:
            routes = self.netlink.get_routes(namespace=subnet.namespace)
            report.results.append(ValidationResult(
                name=f"routes-{subnet.subnet_type}",
                passed=bool(routes),
                message=f"{subnet.subnet_type} subnet {'has' if routes else 'has NO'} routes",
                details={"namespace": subnet.namespace, "routes": len(routes)},
            ))

        return self._finish(report, diag)

    def check_subnet(self, vpc_name: str, subnet_type: str) -> ValidationReport:
        """
        Connectivity from one subnet: every other subnet's host, then the
        internet address when the VPC has NAT.
        """
        vpc = self.store.require_vpc(vpc_name)
        source = self.store.require_subnet(vpc_name, subnet_type)
        report = ValidationReport(vpc=vpc_name)
        diag = DiagnosticLogger(f"test {vpc_name}/{subnet_type}")

        for target in vpc.subnet_list():
            if target.subnet_type == subnet_type:
                continue
            reachable = self._ping(source.namespace, target.host_ip, diag)
            report.results.append(ValidationResult(
                name=f"reach-{target.subnet_type}",
                passed=reachable,
                message=f"{subnet_type} {'can' if reachable else 'CANNOT'} reach {target.subnet_type}",
                details={"from": source.namespace, "to": target.host_ip},
            ))
        if not report.results:
            report.skipped.append("inter-subnet (no other subnets)")

        if not vpc.nat_enabled:
            report.skipped.append("internet access (NAT not enabled)")
        else:
            result = self._internet_result(source, diag)
            if result is None:
                report.skipped.append(f"internet access (no expectation for {subnet_type} subnets)")
            else:
                report.results.append(result)

        return self._finish(report, diag)
