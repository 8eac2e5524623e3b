#!/usr/bin/env python3
"""
Diagnostic Logger for vpcctl

Configures process-wide logging and provides a per-operation collector of
warnings and errors, so multi-step operations (deletion, cleanup, validation)
can keep going past individual failures and still hand back a full account.
"""

import json
import logging
import os
import sys
from datetime import datetime
from typing import Any, Dict, Optional

from ..exceptions import ResourceProviderError

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger("diagnostic")


def configure_logging(settings) -> None:
    """Install stderr and (optionally) file handlers on the root logger."""
    handlers = [logging.StreamHandler(sys.stderr)]
    file_error = None

    if settings.log_file:
        try:
            log_dir = os.path.dirname(settings.log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            handlers.append(logging.FileHandler(settings.log_file))
        except OSError as e:
            file_error = e

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
    )
    if file_error is not None:
        logger.warning(f"Could not open log file {settings.log_file}: {file_error}")


class DiagnosticLogger:
    """Collects warnings and errors with context for one operation."""

    def __init__(self, operation: str):
        self.operation = operation
        self.start_time = datetime.now()
        self.errors = []
        self.warnings = []

    def log_error(self, error_msg: str, context: Optional[Dict[str, Any]] = None):
        """Log an error with context."""
        self.errors.append({
            'timestamp': datetime.now().isoformat(),
            'error': error_msg,
            'context': context or {}
        })
        logger.error(f"{self.operation}: {error_msg}")
        if context:
            logger.error(f"Context: {json.dumps(context, default=str)}")

    def log_warning(self, warning_msg: str, context: Optional[Dict[str, Any]] = None):
        """Log a warning with context."""
        self.warnings.append({
            'timestamp': datetime.now().isoformat(),
            'warning': warning_msg,
            'context': context or {}
        })
        logger.warning(f"{self.operation}: {warning_msg}")
        if context:
            logger.warning(f"Context: {json.dumps(context, default=str)}")

    def log_success(self, success_msg: str):
        logger.info(f"{self.operation}: {success_msg}")

    def log_host_status(self, netlink):
        """Log the host facts that VPC networking depends on."""
        try:
            logger.info(f"IP forwarding enabled: {netlink.ip_forward_enabled()}")
            logger.info(f"Default egress interface: {netlink.get_default_interface()}")
            logger.info(f"Network namespaces: {netlink.list_namespaces()}")
            logger.info(f"Host interfaces: {netlink.get_interfaces()}")
        except ResourceProviderError as e:
            self.log_warning(f"Host status unavailable: {e}")

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def generate_report(self, report_path: Optional[str] = None) -> Dict[str, Any]:
        """Generate a diagnostic report, optionally saving it as JSON."""
        report = {
            'operation': self.operation,
            'start_time': self.start_time.isoformat(),
            'end_time': datetime.now().isoformat(),
            'errors': self.errors,
            'warnings': self.warnings,
            'total_errors': len(self.errors),
            'total_warnings': len(self.warnings)
        }

        if report_path:
            with open(report_path, 'w') as f:
                json.dump(report, f, indent=2)
            logger.info(f"Report saved to: {report_path}")

        return report
