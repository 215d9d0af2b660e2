import os
from typing import List


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except Exception:
        return default


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        # Comma-separated list of allowed CORS origins for the desktop POS and the phone page.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        # Origin the phone opens (the web frontend), not this API.
        self.scanner_public_origin = (
            os.getenv("SCANNER_PUBLIC_ORIGIN", "").strip().rstrip("/") or "http://localhost:3000"
        )
        self.scanner_reconnect_delay_s = _env_float("SCANNER_RECONNECT_DELAY_SECONDS", 3.0)
        # Equal to the base delay means a fixed backoff; larger enables capped exponential backoff.
        self.scanner_reconnect_max_delay_s = max(
            self.scanner_reconnect_delay_s,
            _env_float("SCANNER_RECONNECT_MAX_DELAY_SECONDS", self.scanner_reconnect_delay_s),
        )
        self.scanner_stale_ttl_s = _env_float("SCANNER_STALE_TTL_SECONDS", 300.0)
        self.scanner_feed_keepalive_s = _env_float("SCANNER_FEED_KEEPALIVE_SECONDS", 30.0)
        self.scanner_usb_idle_s = _env_float("SCANNER_USB_IDLE_MS", 100.0) / 1000.0
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"

settings = Settings()
