import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

APP_NAME = "WhatsApp API"
VERSION = "1.0.0"

DEFAULT_API_KEY = "your-secret-api-key-change-this"
DEFAULT_PORT = 3000
DEFAULT_AUTH_DIR = "./wwebjs_auth"
DEFAULT_RECONNECT_DELAY_SEC = 5.0
DEFAULT_TIMEOUT_MS = 60000

# Chromium flags for containers without a sandbox or a GPU
BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--disable-gpu",
    "--single-process",
]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


@dataclass
class Settings:
    api_key: str = DEFAULT_API_KEY
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    auth_dir: Path = Path(DEFAULT_AUTH_DIR)
    client_id: str = ""
    headless: bool = True
    browser_args: List[str] = field(default_factory=lambda: list(BROWSER_ARGS))
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    # Reconnect policy; the defaults retry every 5 seconds forever
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY_SEC
    reconnect_backoff: float = 1.0
    reconnect_max_delay: float = 300.0
    reconnect_max_attempts: Optional[int] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            api_key=os.getenv("API_KEY", DEFAULT_API_KEY),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", str(DEFAULT_PORT))),
            auth_dir=Path(os.getenv("AUTH_DIR", DEFAULT_AUTH_DIR)),
            client_id=os.getenv("WA_CLIENT_ID", ""),
            headless=_env_bool("WA_HEADLESS", True),
            timeout_ms=_env_int("WA_TIMEOUT_MS", DEFAULT_TIMEOUT_MS) or DEFAULT_TIMEOUT_MS,
            reconnect_delay=_env_float("RECONNECT_DELAY", DEFAULT_RECONNECT_DELAY_SEC),
            reconnect_backoff=_env_float("RECONNECT_BACKOFF", 1.0),
            reconnect_max_delay=_env_float("RECONNECT_MAX_DELAY", 300.0),
            reconnect_max_attempts=_env_int("RECONNECT_MAX_ATTEMPTS", None),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    def to_json(self) -> Dict[str, Any]:
        d = dataclasses.asdict(self)
        d["auth_dir"] = str(self.auth_dir)
        # Never echo the shared secret
        d["api_key"] = "(set)" if self.api_key else ""
        return d
