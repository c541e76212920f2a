"""Configuration management for registry_hub.

Configuration is loaded from multiple sources, highest priority first:
- Environment variables (``CACHE_BACKEND``, ``PERSISTER_BATCH_SIZE`` ...)
- A ``.env`` file in the working directory
- A YAML or TOML configuration file
- Built-in defaults

Includes validation so that a misconfigured process fails at startup
rather than on the first request.
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import tomllib  # Python 3.11+
except ImportError:
    import tomli as tomllib  # type: ignore

import yaml
from dotenv import load_dotenv

SOURCE_NAMES = ("local", "sirene", "rne", "bodacc")

DEFAULTS: Dict[str, Any] = {
    "logging": {
        "level": "INFO",
        "file": "logs/registry_hub.log",
        "json": False,
    },
    "sources": {
        "local": {"enabled": True, "timeout_seconds": 2.0, "page_size": 20},
        "sirene": {
            "enabled": True,
            "base_url": "https://api.insee.fr/entreprises/sirene/V3.11",
            "token_url": "https://api.insee.fr/token",
            "timeout_seconds": 10.0,
            "page_size": 20,
        },
        "rne": {
            "enabled": True,
            "base_url": "https://registre-national-entreprises.inpi.fr/api",
            "timeout_seconds": 8.0,
            "page_size": 20,
        },
        "bodacc": {
            "enabled": True,
            "base_url": "https://bodacc-datadila.opendatasoft.com/api/v2",
            "timeout_seconds": 5.0,
            "page_size": 20,
        },
    },
    "rate_limit": {
        "backend": "memory",
        "redis_url": "redis://localhost:6379/0",
        "window_seconds": 60,
        "max_requests": 100,
        "acquire_wait_seconds": 0.5,
        "purge_interval_seconds": 300,
        "sources": {
            "sirene": {"max_requests": 30},
            "rne": {"max_requests": 60},
            "bodacc": {"max_requests": 100},
        },
    },
    "cache": {
        "backend": "memory",
        "redis_url": "redis://localhost:6379/0",
        "namespace": "rh",
        "default_ttl_seconds": 300,
        "compress_threshold_bytes": 16384,
        "sweep_interval_seconds": 60,
        "cache_partial": False,
    },
    "aggregator": {
        "deadline_seconds": 12.0,
        "default_sources": list(SOURCE_NAMES),
        "source_priority": list(SOURCE_NAMES),
        "min_query_length": 3,
    },
    "persister": {
        "batch_size": 50,
        "queue_size": 1000,
        "workers": 2,
        "max_attempts": 3,
        "retry_base_delay_seconds": 0.5,
        "overflow_policy": "drop_oldest",
    },
    "database": {"path": "registry_hub.db"},
    "api_keys": {
        "sirene_consumer_key": "",
        "sirene_consumer_secret": "",
        "rne_token": "",
    },
}


CONFIG_CANDIDATES = (
    Path("config") / "registry_hub.yaml",
    Path("config") / "registry_hub.yml",
    Path("config") / "registry_hub.toml",
    Path("registry_hub.yaml"),
    Path("registry_hub.yml"),
    Path("registry_hub.toml"),
)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
BACKENDS = ("memory", "redis")
OVERFLOW_POLICIES = ("drop_oldest", "reject_new")

# Credential name -> what is unavailable without it
CREDENTIALS = {
    "sirene_consumer_key": "national registry search",
    "sirene_consumer_secret": "national registry search",
    "rne_token": "companies registry documents",
}


@dataclass
class ValidationResult:
    """Problems found in a configuration.

    Errors make the configuration unusable; warnings and missing
    credentials only degrade it (the affected sources report failures).
    """

    is_valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    missing_api_keys: List[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.is_valid = False

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def __str__(self) -> str:
        sections = (
            ("Errors", self.errors),
            ("Warnings", self.warnings),
            ("Missing credentials (sources degrade)", self.missing_api_keys),
        )
        lines: List[str] = []
        for title, items in sections:
            if items:
                lines.append(f"{title}:")
                lines.extend(f"  - {item}" for item in items)
        return "\n".join(lines) if lines else "Configuration OK"


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _coerce(raw: str, current: Any) -> Any:
    """Convert an environment string to the type of the configured value."""
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        try:
            return int(raw)
        except ValueError:
            return raw
    if isinstance(current, float):
        try:
            return float(raw)
        except ValueError:
            return raw
    if isinstance(current, list):
        return [item.strip() for item in raw.split(",") if item.strip()]
    return raw


class Config:
    """Configuration manager for registry_hub."""

    def __init__(self, config_file: Optional[str] = None, load_env: bool = True):
        """
        Initialize configuration.

        Args:
            config_file: Path to YAML or TOML config file (optional)
            load_env: Whether to read a ``.env`` file from the working directory
        """
        self.logger = logging.getLogger(self.__class__.__name__)
        self._config: Dict[str, Any] = {}
        self._config_file = config_file

        if load_env:
            env_path = Path(".env")
            if env_path.exists():
                load_dotenv(env_path)
                self.logger.info("Loaded environment variables from .env")

        self._load()

    @classmethod
    def from_dict(cls, overrides: Dict[str, Any]) -> "Config":
        """Build a configuration from defaults plus in-memory overrides."""
        config = cls.__new__(cls)
        config.logger = logging.getLogger(cls.__name__)
        config._config_file = None
        config._config = _deep_merge(copy.deepcopy(DEFAULTS), overrides)
        return config

    def _read_file(self, path: Path) -> Dict[str, Any]:
        """Parse a YAML or TOML file; unreadable files yield an empty mapping."""
        if not path.exists():
            self.logger.warning("Config file not found: %s", path)
            return {}

        suffix = path.suffix.lower()
        if suffix not in (".yaml", ".yml", ".toml"):
            self.logger.error("Unsupported config format: %s", path)
            return {}

        try:
            with path.open("rb") as handle:
                data = tomllib.load(handle) if suffix == ".toml" else yaml.safe_load(handle)
        except (OSError, yaml.YAMLError, tomllib.TOMLDecodeError) as e:
            self.logger.error("Failed to load config file %s: %s", path, e)
            return {}

        if data is None:
            data = {}
        if not isinstance(data, dict):
            self.logger.error("Config file %s does not contain a mapping", path)
            return {}
        self.logger.info("Loaded config from %s", path)
        return data

    def _load(self) -> None:
        """Read the explicit or first discovered file, then fill in defaults."""
        if self._config_file:
            loaded = self._read_file(Path(self._config_file))
        else:
            found = next((path for path in CONFIG_CANDIDATES if path.exists()), None)
            if found is None:
                self.logger.debug("No config file found, using defaults and environment")
            loaded = self._read_file(found) if found else {}
        self._config = _deep_merge(copy.deepcopy(DEFAULTS), loaded)

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value.

        Supports dot notation for nested keys: "cache.default_ttl_seconds".
        Environment variables win over the file; their string values are
        converted to the type of the configured value.

        Args:
            key: Configuration key (supports dot notation)
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        value: Any = self._config
        found = True
        for k in key.split("."):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                found = False
                break
        current = value if found else default

        env_value = os.getenv(key.upper().replace(".", "_"))
        if env_value is not None:
            return _coerce(env_value, current)

        return current

    def set(self, key: str, value: Any) -> None:
        """
        Set configuration value at runtime.

        Args:
            key: Configuration key (supports dot notation)
            value: Value to set
        """
        keys = key.split(".")
        config = self._config

        for k in keys[:-1]:
            if k not in config:
                config[k] = {}
            config = config[k]

        config[keys[-1]] = value
        self.logger.debug("Set config %s = %r", key, value)

    def get_section(self, section: str) -> Dict[str, Any]:
        """Get entire configuration section."""
        return self._config.get(section, {})

    def get_api_key(self, name: str) -> str:
        """
        Get an API credential.

        Args:
            name: Credential name (e.g., "sirene_consumer_key", "rne_token")

        Returns:
            Credential or empty string if not configured
        """
        env_value = os.getenv(name.upper(), "")
        if env_value:
            return env_value
        return self.get(f"api_keys.{name}", "") or ""

    def is_source_enabled(self, source: str) -> bool:
        """Check if a source is enabled."""
        return bool(self.get(f"sources.{source}.enabled", True))

    def get_source_config(self, source: str) -> Dict[str, Any]:
        """Get configuration for a specific source."""
        section = dict(self.get_section("sources").get(source, {}))
        for key in list(section.keys()):
            section[key] = self.get(f"sources.{source}.{key}", section[key])
        return section

    def rate_limit_for(self, source: str) -> int:
        """Max requests per window for ``source``."""
        override = self.get(f"rate_limit.sources.{source}.max_requests")
        if override is not None:
            return int(override)
        return int(self.get("rate_limit.max_requests", 100))

    def to_dict(self) -> Dict[str, Any]:
        """Get all configuration as dictionary."""
        return copy.deepcopy(self._config)

    def reload(self, config_file: Optional[str] = None) -> None:
        """Re-read the file, dropping runtime ``set`` values."""
        if config_file:
            self._config_file = config_file
        self._load()
        self.logger.info("Configuration reloaded")

    def _check_number(
        self,
        result: ValidationResult,
        key: str,
        integer: bool = False,
        allow_zero: bool = False,
    ) -> Any:
        """Record an error unless ``key`` holds a positive number; return it if valid."""
        value = self.get(key)
        kinds = (int,) if integer else (int, float)
        if isinstance(value, kinds) and not isinstance(value, bool):
            if value > 0 or (allow_zero and value == 0):
                return value
        sign = "non-negative" if allow_zero else "positive"
        noun = "integer" if integer else "number"
        result.add_error(f"{key} must be a {sign} {noun}, got {value!r}")
        return None

    def validate(self) -> ValidationResult:
        """
        Validate the configuration.

        Unknown levels, backends, source names or overflow policies and
        non-positive sizes are errors.  A missing log directory or a long
        cache TTL are warnings.  Missing credentials are listed apart:
        the affected source fails its calls but the service still runs.

        Returns:
            ValidationResult with errors and warnings
        """
        result = ValidationResult()

        level = str(self.get("logging.level", "INFO"))
        if level.upper() not in LOG_LEVELS:
            result.add_error(
                f"Unknown logging level {level!r}; expected one of {', '.join(LOG_LEVELS)}"
            )

        log_file = self.get("logging.file", "")
        if log_file and not Path(log_file).parent.exists():
            result.add_warning(f"Log directory {Path(log_file).parent} will be created")

        for source in SOURCE_NAMES:
            self._check_number(result, f"sources.{source}.timeout_seconds")

        self._check_number(result, "rate_limit.window_seconds")
        self._check_number(result, "rate_limit.max_requests")
        self._check_number(result, "rate_limit.acquire_wait_seconds", allow_zero=True)
        self._check_number(result, "aggregator.deadline_seconds")

        for key in ("rate_limit.backend", "cache.backend"):
            backend = self.get(key, "memory")
            if backend not in BACKENDS:
                result.add_error(f"{key} must be one of {', '.join(BACKENDS)}, got {backend!r}")

        ttl = self._check_number(result, "cache.default_ttl_seconds", integer=True)
        if ttl is not None and ttl > 3600:
            result.add_warning(f"cache.default_ttl_seconds={ttl} is long for aggregated results")

        for key in ("aggregator.default_sources", "aggregator.source_priority"):
            unknown = sorted(set(self.get(key, [])) - set(SOURCE_NAMES))
            if unknown:
                result.add_error(f"{key} names unknown sources: {', '.join(unknown)}")

        for name in ("batch_size", "queue_size", "workers", "max_attempts"):
            self._check_number(result, f"persister.{name}", integer=True)

        policy = self.get("persister.overflow_policy", "drop_oldest")
        if policy not in OVERFLOW_POLICIES:
            result.add_error(
                f"persister.overflow_policy must be one of "
                f"{', '.join(OVERFLOW_POLICIES)}, got {policy!r}"
            )

        for name, purpose in CREDENTIALS.items():
            if not self.get_api_key(name):
                result.missing_api_keys.append(f"{name}: {purpose}")

        for message in result.errors:
            self.logger.error("Invalid configuration: %s", message)
        for message in result.warnings:
            self.logger.warning("Configuration: %s", message)
        return result

    def validate_and_raise(self) -> None:
        """Raise ``ValueError`` listing every error if the configuration is invalid."""
        result = self.validate()
        if not result.is_valid:
            raise ValueError(f"Invalid configuration:\n{result}")
