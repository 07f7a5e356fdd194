"""Environment variable validation and management."""

import os
import logging
from typing import Dict

logger = logging.getLogger(__name__)

BLOB_BACKENDS = frozenset({"local", "s3"})


class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


def validate_environment() -> None:
    """Validate configuration and apply defaults.

    Raises EnvironmentError if validation fails.
    """
    defaults = {
        "DB_PATH": "data.db",
        "BLOB_BACKEND": "local",
        "BLOB_LOCAL_DIR": "blobs",
        "CERTIFICATES_BUCKET": "certificates",
        "CERTIFICATE_NUMBER_PREFIX": "FAV",
        "DEFAULT_PASS_THRESHOLD": "70",
        "IDENTITY_HEADER": "X-Authenticated-User",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "APP_URL": "Public base URL used in certificate verification links",
    }

    backend = os.environ["BLOB_BACKEND"].strip().lower()
    if backend not in BLOB_BACKENDS:
        raise EnvironmentError(
            f"Invalid BLOB_BACKEND: {backend} (expected one of {', '.join(sorted(BLOB_BACKENDS))})"
        )
    if backend == "s3":
        optional_vars.update(
            {
                "S3_ENDPOINT_URL": "S3-compatible endpoint (empty for AWS)",
                "S3_ACCESS_KEY": "Object storage access key",
                "S3_SECRET_KEY": "Object storage secret key",
                "S3_PUBLIC_BASE_URL": "Public base URL for stored certificates",
            }
        )

    # Validate URLs
    url_vars = {"APP_URL", "S3_ENDPOINT_URL", "S3_PUBLIC_BASE_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    threshold = get_env_int("DEFAULT_PASS_THRESHOLD", 70)
    if not 0 <= threshold <= 100:
        raise EnvironmentError(f"DEFAULT_PASS_THRESHOLD must be between 0 and 100, got {threshold}")

    if not os.environ["CERTIFICATE_NUMBER_PREFIX"].strip():
        raise EnvironmentError("CERTIFICATE_NUMBER_PREFIX must not be blank")

    # Log optional variables status
    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning("Optional environment variable not set: %s (%s)", var, description)


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def get_env_int(name: str, default: int) -> int:
    """Get integer value from environment variable."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as exc:
        raise EnvironmentError(f"{name} must be an integer, got {value!r}") from exc


def describe_environment() -> Dict[str, str]:
    """Return the effective non-secret configuration for startup logging."""
    keys = (
        "DB_PATH",
        "APP_URL",
        "BLOB_BACKEND",
        "BLOB_LOCAL_DIR",
        "CERTIFICATES_BUCKET",
        "CERTIFICATE_NUMBER_PREFIX",
        "DEFAULT_PASS_THRESHOLD",
        "IDENTITY_HEADER",
    )
    return {key: os.getenv(key, "") for key in keys}
