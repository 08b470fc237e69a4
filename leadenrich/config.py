"""
Runtime configuration.

Settings come from the process environment, optionally seeded from a ``.env``
file in the working directory. Values already present in the environment win.
"""

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigurationError

ENV_PREFIX = "LEADENRICH_"


def load_env(env_path: Optional[Path] = None) -> bool:
    """Load .env from the project root if present."""
    env_path = env_path or Path.cwd() / ".env"
    if not env_path.exists():
        return False
    return load_dotenv(dotenv_path=env_path, override=False)


def _get(env: Mapping[str, str], name: str, default: str) -> str:
    value = env.get(ENV_PREFIX + name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = _get(env, name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}")


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = _get(env, name, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}")


def _decimal(env: Mapping[str, str], name: str, default: str) -> Decimal:
    raw = _get(env, name, default)
    try:
        return Decimal(raw)
    except InvalidOperation:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be a decimal amount, got {raw!r}")


@dataclass
class Settings:
    db_path: Path = Path("data/leadenrich.db")
    cache_ttl_seconds: int = 30 * 24 * 3600

    provider_name: str = "batchdata"
    provider_version: str = "v1"
    provider_base_url: str = ""
    provider_api_key: str = ""
    provider_timeout: float = 15.0
    provider_cost: Decimal = Decimal("0.25")
    provider_daily_quota: int = 0

    webhook_max_attempts: int = 5
    webhook_timeout: float = 10.0
    webhook_workers: int = 4
    backoff_base: float = 1.0
    backoff_max: float = 300.0

    backfill_retry_budget: int = 25
    backfill_max_subject_attempts: int = 3
    backfill_concurrency: int = 4
    report_dir: Path = Path("data/reports")

    log_level: str = "INFO"
    log_dir: Path = Path("logs")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from environment variables (LEADENRICH_*)."""
        env = os.environ if env is None else env
        d = cls()
        settings = cls(
            db_path=Path(_get(env, "DB_PATH", str(d.db_path))),
            cache_ttl_seconds=_int(env, "CACHE_TTL_SECONDS", d.cache_ttl_seconds),
            provider_name=_get(env, "PROVIDER_NAME", d.provider_name),
            provider_version=_get(env, "PROVIDER_VERSION", d.provider_version),
            provider_base_url=_get(env, "PROVIDER_BASE_URL", d.provider_base_url),
            provider_api_key=_get(env, "PROVIDER_API_KEY", d.provider_api_key),
            provider_timeout=_float(env, "PROVIDER_TIMEOUT", d.provider_timeout),
            provider_cost=_decimal(env, "PROVIDER_COST", str(d.provider_cost)),
            provider_daily_quota=_int(env, "PROVIDER_DAILY_QUOTA", d.provider_daily_quota),
            webhook_max_attempts=_int(env, "WEBHOOK_MAX_ATTEMPTS", d.webhook_max_attempts),
            webhook_timeout=_float(env, "WEBHOOK_TIMEOUT", d.webhook_timeout),
            webhook_workers=_int(env, "WEBHOOK_WORKERS", d.webhook_workers),
            backoff_base=_float(env, "BACKOFF_BASE", d.backoff_base),
            backoff_max=_float(env, "BACKOFF_MAX", d.backoff_max),
            backfill_retry_budget=_int(env, "BACKFILL_RETRY_BUDGET", d.backfill_retry_budget),
            backfill_max_subject_attempts=_int(
                env, "BACKFILL_MAX_SUBJECT_ATTEMPTS", d.backfill_max_subject_attempts
            ),
            backfill_concurrency=_int(env, "BACKFILL_CONCURRENCY", d.backfill_concurrency),
            report_dir=Path(_get(env, "REPORT_DIR", str(d.report_dir))),
            log_level=_get(env, "LOG_LEVEL", d.log_level).upper(),
            log_dir=Path(_get(env, "LOG_DIR", str(d.log_dir))),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.webhook_max_attempts < 1:
            raise ConfigurationError(f"{ENV_PREFIX}WEBHOOK_MAX_ATTEMPTS must be >= 1")
        if self.webhook_workers < 1:
            raise ConfigurationError(f"{ENV_PREFIX}WEBHOOK_WORKERS must be >= 1")
        if self.backfill_concurrency < 1:
            raise ConfigurationError(f"{ENV_PREFIX}BACKFILL_CONCURRENCY must be >= 1")
        if self.cache_ttl_seconds < 0:
            raise ConfigurationError(f"{ENV_PREFIX}CACHE_TTL_SECONDS must be >= 0")
        if self.provider_version not in ("v1", "v2"):
            raise ConfigurationError(f"{ENV_PREFIX}PROVIDER_VERSION must be 'v1' or 'v2'")
