"""
Service configuration.

Values come from environment variables (see load_settings). Settings is a plain
dataclass so tests can build one directly without touching the environment.
"""

import os
from dataclasses import dataclass
from typing import Optional

DEV_JWT_SECRET = "dev-secret-change-me"


class ConfigError(Exception):
    """Raised when an environment variable holds an unusable value."""


@dataclass
class Settings:
    database_url: str = "sqlite:///./data/objectstore.db"
    storage_root: str = "./data/blobs"

    # External permission service. Empty means the local policy oracle is used.
    iam_url: str = ""
    iam_timeout_seconds: float = 5.0
    policy_file: Optional[str] = None

    jwt_secret: str = DEV_JWT_SECRET
    jwt_algorithm: str = "HS256"

    default_region: str = "us-east-1"
    catalog_retries: int = 3
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000

    def __post_init__(self):
        self.iam_url = self.iam_url.rstrip("/")

    @property
    def uses_dev_secret(self) -> bool:
        return self.jwt_secret == DEV_JWT_SECRET


def _get_env(name: str, default: str = "") -> str:
    return os.environ.get(name, default)


def _get_int(name: str, default: int) -> int:
    raw = _get_env(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got: {raw!r}")


def _get_float(name: str, default: float) -> float:
    raw = _get_env(name, str(default))
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got: {raw!r}")
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got: {raw!r}")
    return value


def load_settings() -> Settings:
    """
    Build Settings from the environment.

    Recognised variables:
    - OBJECTSTORE_DATABASE_URL: SQLAlchemy URL of the metadata catalog
    - OBJECTSTORE_STORAGE_ROOT: directory holding object bytes
    - OBJECTSTORE_IAM_URL: base URL of the permission service
    - OBJECTSTORE_IAM_TIMEOUT: seconds allowed per permission check
    - OBJECTSTORE_POLICY_FILE: JSON policy for the local oracle
    - OBJECTSTORE_JWT_SECRET / OBJECTSTORE_JWT_ALGORITHM: bearer token verification
    - OBJECTSTORE_DEFAULT_REGION, OBJECTSTORE_CATALOG_RETRIES, OBJECTSTORE_LOG_LEVEL
    - OBJECTSTORE_HOST / OBJECTSTORE_PORT: bind address

    Raises:
        ConfigError: a numeric variable cannot be parsed, or the log level is unknown
    """
    defaults = Settings()

    log_level = _get_env("OBJECTSTORE_LOG_LEVEL", defaults.log_level).upper()
    if log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        raise ConfigError(f"OBJECTSTORE_LOG_LEVEL is not a log level: {log_level!r}")

    retries = _get_int("OBJECTSTORE_CATALOG_RETRIES", defaults.catalog_retries)
    if retries < 1:
        raise ConfigError("OBJECTSTORE_CATALOG_RETRIES must be at least 1")

    return Settings(
        database_url=_get_env("OBJECTSTORE_DATABASE_URL", defaults.database_url),
        storage_root=_get_env("OBJECTSTORE_STORAGE_ROOT", defaults.storage_root),
        iam_url=_get_env("OBJECTSTORE_IAM_URL"),
        iam_timeout_seconds=_get_float("OBJECTSTORE_IAM_TIMEOUT", defaults.iam_timeout_seconds),
        policy_file=_get_env("OBJECTSTORE_POLICY_FILE") or None,
        jwt_secret=_get_env("OBJECTSTORE_JWT_SECRET", defaults.jwt_secret),
        jwt_algorithm=_get_env("OBJECTSTORE_JWT_ALGORITHM", defaults.jwt_algorithm),
        default_region=_get_env("OBJECTSTORE_DEFAULT_REGION", defaults.default_region),
        catalog_retries=retries,
        log_level=log_level,
        host=_get_env("OBJECTSTORE_HOST", defaults.host),
        port=_get_int("OBJECTSTORE_PORT", defaults.port),
    )
