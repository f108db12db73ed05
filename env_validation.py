"""Environment variable validation and management."""

import os
import logging
from typing import Dict

logger = logging.getLogger(__name__)

class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass

def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentError if validation fails.
    """
    # The feed runs without a generator endpoint (generation attempts then fail
    # and are reported as generation events), so nothing is strictly required.
    required_vars: Dict[str, str] = {}

    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
    }

    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "GENERATOR_URL": "Chat-completions endpoint used for question generation",
        "DASHBOARD_URL": "Dashboard endpoint receiving generation events",
        "TOPIC_RELATIONS_PATH": "JSON/YAML file overriding the topic relation table",
    }

    missing = []
    for var, description in required_vars.items():
        if not os.getenv(var):
            missing.append(f"{var} ({description})")

    if missing:
        raise EnvironmentError(
            f"Missing required environment variables: {', '.join(missing)}"
        )

    url_vars = {"GENERATOR_URL", "DASHBOARD_URL"}
    for var in sorted(url_vars):
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    numeric_vars = {
        "GENERATION_TIMEOUT": float,
        "GENERATION_COOLDOWN_SECONDS": float,
        "MILESTONE_INTERVAL": int,
    }
    for var, caster in numeric_vars.items():
        value = os.getenv(var)
        if value is None or value == "":
            continue
        try:
            parsed = caster(value)
        except ValueError as exc:
            raise EnvironmentError(f"Invalid numeric value for {var}: {value}") from exc
        if parsed < 0:
            raise EnvironmentError(f"{var} must not be negative: {value}")

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
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring non-integer value for %s: %r", name, value)
        return default

def get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Ignoring non-numeric value for %s: %r", name, value)
        return default
