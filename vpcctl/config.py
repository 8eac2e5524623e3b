# File: config.py

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_STATE_DIR = "/var/lib/vpcctl"


@dataclass
class Settings:
    state_dir: str
    db_url: str
    lock_file: str
    log_file: Optional[str]
    log_level: str = "INFO"
    command_timeout: float = 30.0
    probe_address: str = "8.8.8.8"
    egress_interface: Optional[str] = None
    rest_port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        state_dir = os.getenv("VPCCTL_STATE_DIR", DEFAULT_STATE_DIR)
        log_file = os.getenv("VPCCTL_LOG_FILE", os.path.join(state_dir, "vpcctl.log"))
        return cls(
            state_dir=state_dir,
            db_url=os.getenv("VPCCTL_DB_URL", f"sqlite:///{os.path.join(state_dir, 'state.db')}"),
            lock_file=os.getenv("VPCCTL_LOCK_FILE", os.path.join(state_dir, "vpcctl.lock")),
            log_file=log_file or None,
            log_level=os.getenv("VPCCTL_LOG_LEVEL", "INFO").upper(),
            command_timeout=float(os.getenv("VPCCTL_COMMAND_TIMEOUT", 30)),
            probe_address=os.getenv("VPCCTL_PROBE_ADDRESS", "8.8.8.8"),
            egress_interface=os.getenv("VPCCTL_EGRESS_INTERFACE") or None,
            rest_port=int(os.getenv("REST_PORT", 8000)),
        )

    def ensure_state_dir(self):
        os.makedirs(self.state_dir, exist_ok=True)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings():
    """Forget cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
