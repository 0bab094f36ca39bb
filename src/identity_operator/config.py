"""Configuration management with validation.

Configuration is read from the environment and validated at construction
time, so a bad endpoint or token setup fails before any remote call.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from urllib.parse import urlparse


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_REQUEST_TIMEOUT_SECONDS = 60
MIN_REQUEST_TIMEOUT_SECONDS = 1
MAX_REQUEST_TIMEOUT_SECONDS = 600

DEFAULT_MAX_RETRIES = 3
MAX_RETRIES_LIMIT = 10

DEFAULT_SCHEME = "https://"

# Terraform CLI credential variables: TF_TOKEN_<host>, "." -> "_", "-" -> "__"
TF_TOKEN_PREFIX = "TF_TOKEN_"

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
VALID_HOST_PATTERN = r"^[A-Za-z0-9.-]+(:[0-9]{1,5})?$"


def normalize_endpoint(endpoint: str) -> str:
    """Prefix https:// when no scheme is given and drop trailing slashes."""
    endpoint = endpoint.strip()
    if endpoint and "://" not in endpoint:
        endpoint = DEFAULT_SCHEME + endpoint
    return endpoint.rstrip("/")


def tf_token_env_var(host: str) -> str:
    """Name of the Terraform-style token variable for a host."""
    return TF_TOKEN_PREFIX + host.replace("-", "__").replace(".", "_")


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    endpoint: str
    static_token: str

    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS
    max_retries: int = DEFAULT_MAX_RETRIES

    # Behavior
    dry_run: bool = False

    # Logging
    log_level: str = "INFO"
    enable_json_logging: bool = True

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not self.endpoint:
            errors.append("THARSIS_ENDPOINT is required")
        else:
            parsed = urlparse(self.endpoint)
            if parsed.scheme != "https":
                errors.append(f"THARSIS_ENDPOINT must use https: {self.endpoint}")
            elif not parsed.netloc or not re.match(VALID_HOST_PATTERN, parsed.netloc):
                errors.append(f"THARSIS_ENDPOINT has an invalid host: {self.endpoint}")

        if not self.static_token:
            errors.append("THARSIS_STATIC_TOKEN (or TF_TOKEN_<host>) is required")

        if not (
            MIN_REQUEST_TIMEOUT_SECONDS
            <= self.request_timeout_seconds
            <= MAX_REQUEST_TIMEOUT_SECONDS
        ):
            errors.append(
                f"THARSIS_REQUEST_TIMEOUT must be between {MIN_REQUEST_TIMEOUT_SECONDS} "
                f"and {MAX_REQUEST_TIMEOUT_SECONDS} seconds"
            )

        if not (0 <= self.max_retries <= MAX_RETRIES_LIMIT):
            errors.append(f"THARSIS_MAX_RETRIES must be between 0 and {MAX_RETRIES_LIMIT}")

        if self.log_level not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def host(self) -> str:
        return urlparse(self.endpoint).netloc

    @property
    def logging_level(self) -> int:
        return getattr(logging, self.log_level)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            THARSIS_ENDPOINT: Tharsis API URL; https:// is assumed without a scheme
            THARSIS_STATIC_TOKEN: Bearer token for the API
            TF_TOKEN_<host>: Fallback token in Terraform CLI credential format
            THARSIS_REQUEST_TIMEOUT: Per-request timeout in seconds (default: 60)
            THARSIS_MAX_RETRIES: Transport retry budget (default: 3)
            DRY_RUN: If "true", only plan without applying (default: false)
            LOG_LEVEL: Root log level (default: INFO)
            ENABLE_JSON_LOGGING: Emit JSON log lines (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        endpoint = normalize_endpoint(os.environ.get("THARSIS_ENDPOINT", ""))

        static_token = os.environ.get("THARSIS_STATIC_TOKEN", "")
        if not static_token and endpoint:
            static_token = os.environ.get(tf_token_env_var(urlparse(endpoint).netloc), "")

        return cls(
            endpoint=endpoint,
            static_token=static_token,
            request_timeout_seconds=get_int(
                "THARSIS_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS
            ),
            max_retries=get_int("THARSIS_MAX_RETRIES", DEFAULT_MAX_RETRIES),
            dry_run=get_bool("DRY_RUN", False),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            enable_json_logging=get_bool("ENABLE_JSON_LOGGING", True),
        )
