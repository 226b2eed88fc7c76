from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final, Tuple

from dotenv import load_dotenv

load_dotenv()


def _split_tokens(raw: str | None) -> Tuple[str, ...]:
    if not raw:
        return ()
    return tuple(token.strip() for token in raw.split(",") if token.strip())


@dataclass(slots=True)
class Settings:
    """Central configuration driven by environment variables."""

    api_host: str = os.getenv("API_HOST", "0.0.0.0")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    request_timeout_seconds: float = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "15"))
    quote_api_base_url: str = os.getenv("QUOTE_API_BASE_URL", "https://query1.finance.yahoo.com")

    data_dir: Path = field(default_factory=lambda: Path(os.getenv("DATA_DIR", "./data")))
    database_url: str | None = os.getenv("DATABASE_URL")

    probe_delay_seconds: float = float(os.getenv("PROBE_DELAY_SECONDS", "1.0"))
    probe_error_delay_seconds: float = float(os.getenv("PROBE_ERROR_DELAY_SECONDS", "2.0"))
    refresh_delay_seconds: float = float(os.getenv("REFRESH_DELAY_SECONDS", "0.1"))
    backfill_concurrency: int = int(os.getenv("BACKFILL_CONCURRENCY", "5"))
    # Provider calls allowed per minute across all runs; 0 disables the cap.
    provider_rate_limit_per_minute: int = int(os.getenv("PROVIDER_RATE_LIMIT_PER_MINUTE", "100"))

    backfill_windows_raw: str | None = os.getenv("BACKFILL_WINDOWS_DAYS", "30,90,180,365")
    canonical_index_markers_raw: str | None = os.getenv("CANONICAL_INDEX_MARKERS", "CASE30,EGX30")
    # Used when a probe run resolves nothing.
    default_symbol: str = os.getenv("DEFAULT_SYMBOL", "^EGX30CAPPED.CA")

    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    def ensure_paths(self) -> None:
        """Create expected directories if they do not exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        (self.data_dir / "export").mkdir(parents=True, exist_ok=True)

    @property
    def backfill_windows(self) -> Tuple[int, ...]:
        windows = sorted({int(token) for token in _split_tokens(self.backfill_windows_raw)})
        return tuple(w for w in windows if w > 0)

    @property
    def canonical_index_markers(self) -> Tuple[str, ...]:
        return tuple(token.upper() for token in _split_tokens(self.canonical_index_markers_raw))


# Singleton-style settings import
settings: Final[Settings] = Settings()
settings.ensure_paths()
