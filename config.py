"""
Configuration Module
====================
Environment-driven settings for the sale engine, read once at startup.

Sections:
- store: which backend holds customers, sessions and orders
- supabase: credentials, only required for the supabase backend
- checkout: save debounce, pending-view deposit ratio, capture defaults
- features: optional behaviour toggles
- server: HTTP bind address, CORS and log level

A bad value raises ConfigurationError naming the variable, so a
misconfigured deployment fails before serving a request.
"""

import os
import logging
from typing import Any, Callable, Dict, List, Optional
from pathlib import Path
from dotenv import load_dotenv


logger = logging.getLogger(__name__)


STORE_BACKENDS = ("memory", "supabase")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
TRUTHY = ("true", "1", "yes", "on", "enabled")


def load_environment(env_file: Optional[str] = None) -> bool:
    """
    Load a dotenv file into the process environment.

    Variables already set in the environment win over the file. The file
    defaults to ENV_FILE, then ``.env`` in the working directory.

    Returns:
        True when a file was loaded
    """
    env_path = Path(env_file or os.getenv("ENV_FILE", ".env"))
    if not env_path.exists():
        logger.debug(f"No dotenv file at {env_path}")
        return False

    load_dotenv(env_path, override=False)
    logger.info(f"Loaded environment from {env_path}")
    return True


load_environment()


class ConfigurationError(Exception):
    """A sale engine variable is missing or has an unusable value."""
    pass


def _env(key: str, default: Any = None, cast: Callable[[str], Any] = str, required: bool = False) -> Any:
    """
    Read one variable, stripped and converted with ``cast``.

    Blank values count as unset.

    Raises:
        ConfigurationError: required and unset, or ``cast`` rejects the value
    """
    raw = (os.getenv(key) or "").strip()
    if not raw:
        if required:
            raise ConfigurationError(f"Missing required environment variable: {key}")
        return default

    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(f"Invalid value for {key}: {raw!r}")


def _flag(key: str, default: bool) -> bool:
    return _env(key, default, cast=lambda raw: raw.lower() in TRUTHY)


def _choice(key: str, default: str, allowed, normalize=str.lower) -> str:
    value = normalize(_env(key, default))
    if value not in allowed:
        raise ConfigurationError(f"{key} must be one of {', '.join(allowed)}: {value}")
    return value


class StoreConfig:
    """Which data store backend to use."""

    def __init__(self):
        self.backend = _choice("STORE_BACKEND", "memory", STORE_BACKENDS)

    @property
    def is_persistent(self) -> bool:
        return self.backend != "memory"


class SupabaseConfig:
    """Supabase project credentials and client timeout."""

    def __init__(self, required: bool = True):
        self.url = _env("SUPABASE_URL", required=required)
        self.key = _env("SUPABASE_KEY", required=required)
        self.connection_timeout = _env("SUPABASE_TIMEOUT", 10, cast=int)

        if self.url and not self.url.startswith("https://"):
            raise ConfigurationError(f"SUPABASE_URL must start with https://: {self.url}")


class CheckoutConfig:
    """Capture and checkout behaviour."""

    def __init__(self):
        # Idle delay before a checkout edit is written
        self.save_delay_ms = _env("CHECKOUT_SAVE_DELAY_MS", 500, cast=int)

        # Deposit share that counts as ready in the pending view
        self.min_deposit_ratio = _env("MIN_DEPOSIT_RATIO", 0.5, cast=float)

        # Code used when the operator leaves the code field empty
        self.default_line_code = _env("DEFAULT_LINE_CODE", "JP")

        self.order_number_prefix = _env("ORDER_NUMBER_PREFIX", "CMD")

        if self.save_delay_ms < 0:
            raise ConfigurationError(f"CHECKOUT_SAVE_DELAY_MS must be >= 0: {self.save_delay_ms}")

        if not 0.0 <= self.min_deposit_ratio <= 1.0:
            raise ConfigurationError(f"MIN_DEPOSIT_RATIO must be between 0 and 1: {self.min_deposit_ratio}")

    @property
    def save_delay_seconds(self) -> float:
        return self.save_delay_ms / 1000.0


class FeatureFlags:
    """Optional behaviour toggles."""

    def __init__(self):
        # Reject live quick-form codes already used in the session
        self.enforce_session_code_uniqueness = _flag("ENFORCE_SESSION_CODE_UNIQUENESS", True)
        self.enable_metrics_endpoint = _flag("ENABLE_METRICS", True)
        # Forces DEBUG logging and FastAPI debug tracebacks
        self.debug_mode = _flag("DEBUG_MODE", False)


class ServerConfig:
    """HTTP server settings."""

    def __init__(self, debug: bool = False):
        self.host = _env("HOST", "0.0.0.0")
        self.port = _env("PORT", 8000, cast=int)
        self.cors_origins = [origin.strip() for origin in _env("CORS_ORIGINS", "*").split(",") if origin.strip()]
        self.log_level = "DEBUG" if debug else _choice("LOG_LEVEL", "INFO", LOG_LEVELS, normalize=str.upper)


class Config:
    """
    All sale engine settings.

    Raises:
        ConfigurationError: any section is invalid
    """

    def __init__(self):
        try:
            self.store = StoreConfig()
            self.supabase = SupabaseConfig(required=self.store.backend == "supabase")
            self.checkout = CheckoutConfig()
            self.features = FeatureFlags()
            self.server = ServerConfig(debug=self.features.debug_mode)
        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            raise

        logger.info(
            "Configuration loaded",
            extra={"store_backend": self.store.backend, "log_level": self.server.log_level}
        )

    def get_safe_summary(self) -> Dict[str, Any]:
        """Settings without the Supabase key."""
        return {
            "store_backend": self.store.backend,
            "supabase_url": self.supabase.url,
            "checkout": {
                "save_delay_ms": self.checkout.save_delay_ms,
                "min_deposit_ratio": self.checkout.min_deposit_ratio,
                "default_line_code": self.checkout.default_line_code,
                "order_number_prefix": self.checkout.order_number_prefix,
            },
            "features": {
                "session_code_uniqueness": self.features.enforce_session_code_uniqueness,
                "metrics": self.features.enable_metrics_endpoint,
                "debug": self.features.debug_mode,
            },
            "server": {
                "host": self.server.host,
                "port": self.server.port,
                "log_level": self.server.log_level,
            }
        }


_config: Optional[Config] = None


def get_config() -> Config:
    """Process-wide configuration, built on first use."""
    global _config

    if _config is None:
        _config = Config()

    return _config


def validate_configuration(config: Optional[Config] = None) -> List[str]:
    """
    Startup check: log the settings and return operator warnings.

    Raises:
        ConfigurationError: configuration is invalid
    """
    config = config or get_config()
    summary = config.get_safe_summary()

    logger.info(
        f"Store backend: {summary['store_backend']}, "
        f"server {summary['server']['host']}:{summary['server']['port']}"
    )

    warnings = []
    if not config.store.is_persistent:
        warnings.append("STORE_BACKEND=memory: orders are lost on restart")
    if config.checkout.save_delay_ms == 0:
        warnings.append("CHECKOUT_SAVE_DELAY_MS=0: every checkout keystroke is written")
    if config.checkout.min_deposit_ratio == 0:
        warnings.append("MIN_DEPOSIT_RATIO=0: orders without a deposit show as ready")
    if config.features.debug_mode and config.store.is_persistent:
        warnings.append("DEBUG_MODE with a persistent store: tracebacks are exposed")

    for warning in warnings:
        logger.warning(warning)

    return warnings
