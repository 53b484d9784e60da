"""Runtime settings, from keyword arguments or FACEPAY_* environment variables."""

import os
from dataclasses import dataclass
from pathlib import Path

from facepay.client import DEFAULT_BASE_URL
from facepay.sync import DEFAULT_POLL_INTERVAL


@dataclass
class Settings:
    base_url: str = DEFAULT_BASE_URL
    timeout: float = 30
    poll_interval: float = DEFAULT_POLL_INTERVAL
    data_dir: Path = Path("~/.facepay")
    max_pin_attempts: int = 3
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ=None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            base_url=env.get("FACEPAY_API_BASE_URL", DEFAULT_BASE_URL),
            timeout=float(env.get("FACEPAY_TIMEOUT", 30)),
            poll_interval=float(env.get("FACEPAY_POLL_INTERVAL", DEFAULT_POLL_INTERVAL)),
            data_dir=Path(env.get("FACEPAY_DATA_DIR", "~/.facepay")).expanduser(),
            max_pin_attempts=int(env.get("FACEPAY_MAX_PIN_ATTEMPTS", 3)),
            log_level=env.get("FACEPAY_LOG_LEVEL", "INFO").upper(),
        )
