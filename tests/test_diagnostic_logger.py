import json
import logging

from vpcctl.api.diagnostic_logger import DiagnosticLogger, configure_logging
from vpcctl.config import Settings, get_settings, reset_settings

from fakes import FakeNetlinkManager


def test_collects_errors_and_warnings(caplog):
    diag = DiagnosticLogger("delete-vpc vA")
    with caplog.at_level(logging.WARNING, logger="diagnostic"):
        diag.log_warning("namespace already gone", {"namespace": "vA-public-subnet"})
        diag.log_error("could not delete vA-br", {"error": "Operation not permitted"})

    assert diag.has_errors
    assert diag.errors[0]["context"] == {"error": "Operation not permitted"}
    assert "delete-vpc vA: could not delete vA-br" in caplog.text


def test_report_written_to_file(tmp_path):
    diag = DiagnosticLogger("validate vA")
    diag.log_error("private subnet has internet (should be isolated)")
    path = tmp_path / "report.json"

    report = diag.generate_report(str(path))

    assert report["total_errors"] == 1 and report["total_warnings"] == 0
    assert json.loads(path.read_text())["operation"] == "validate vA"


def test_host_status(caplog):
    netlink = FakeNetlinkManager()
    with caplog.at_level(logging.INFO, logger="diagnostic"):
        DiagnosticLogger("status").log_host_status(netlink)
    assert "Default egress interface: eth0" in caplog.text


def test_configure_logging_survives_unwritable_file(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    settings = Settings(state_dir=str(tmp_path), db_url="sqlite://", lock_file=str(tmp_path / "lock"),
                        log_file=str(blocker / "vpcctl.log"))
    configure_logging(settings)


def test_settings_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("VPCCTL_STATE_DIR", str(tmp_path))
    monkeypatch.setenv("VPCCTL_LOG_LEVEL", "debug")
    monkeypatch.setenv("VPCCTL_EGRESS_INTERFACE", "wlan0")
    reset_settings()
    try:
        settings = get_settings()
        assert settings.db_url == f"sqlite:///{tmp_path / 'state.db'}"
        assert settings.lock_file == str(tmp_path / "vpcctl.lock")
        assert settings.log_level == "DEBUG"
        assert settings.egress_interface == "wlan0"
        assert get_settings() is settings
    finally:
        reset_settings()
