"""
Configuration loading for depup.

Settings live in ``depup.config.json`` in the working directory. Whatever the
file provides is merged over ``DEFAULT_CONFIG`` key by key, so a config file
only needs the values it changes.
"""

from __future__ import annotations

import copy
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from .errors import ConfigurationError


logger = logging.getLogger(__name__)

CONFIG_FILENAME = "depup.config.json"

DEFAULT_DISCOVERY_PACKAGES = [
    "lodash", "react", "express", "axios", "moment", "jquery",
    "vue", "angular", "bootstrap", "webpack", "typescript",
    "eslint", "prettier", "jest", "mocha", "chai", "sinon",
    "redux", "next", "nuxt", "svelte", "rollup", "vite",
    "tailwindcss", "styled-components", "emotion", "framer-motion",
    "three", "d3", "chart.js", "leaflet", "socket.io",
    "mongoose", "sequelize", "prisma", "typeorm", "knex",
    "nodemailer", "multer", "cors", "helmet", "compression",
    "dotenv", "cross-env", "concurrently", "nodemon", "pm2",
]

DEFAULT_CONFIG: Dict[str, Any] = {
    "registry": "https://registry.npmjs.org",
    "scope": "@depup",
    "packagesDir": "packages",
    "rateLimitDelay": 1000,
    "maxPackagesPerRun": 10,
    "maxPackagesPerDiscovery": 50,
    "concurrency": 5,
    "timeout": 300_000,
    "retryAttempts": 3,
    "retryDelay": 5000,
    "publish": {
        "enabled": False,
        "access": "public",
        "prereleaseTag": "beta",
    },
    "testing": {
        "enabled": True,
        "methods": [
            "npm install --production",
            "npm install --production --legacy-peer-deps",
            "npm install --production --force --ignore-scripts",
        ],
        "harnessMethods": [
            "npm install",
            "npm install --legacy-peer-deps",
            "npm install --force --ignore-scripts",
        ],
    },
    "discovery": {
        "enabled": True,
        "packages": DEFAULT_DISCOVERY_PACKAGES,
    },
    "integrity": {
        "enabled": True,
        "voting": {
            "enabled": True,
            "anonymous": True,
            "requireDescription": False,
        },
    },
}

NUMERIC_FIELDS = (
    "rateLimitDelay",
    "maxPackagesPerRun",
    "maxPackagesPerDiscovery",
    "concurrency",
    "timeout",
    "retryAttempts",
    "retryDelay",
)
BOOLEAN_FIELDS = (
    "publish.enabled",
    "testing.enabled",
    "discovery.enabled",
    "integrity.enabled",
    "integrity.voting.enabled",
    "integrity.voting.anonymous",
    "integrity.voting.requireDescription",
)
LIST_FIELDS = (
    "discovery.packages",
    "testing.methods",
    "testing.harnessMethods",
)


def merge_configs(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Deep-merge ``overrides`` into a copy of ``defaults``; lists are replaced."""
    merged = copy.deepcopy(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_configs(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def get_nested_value(data: Dict[str, Any], path: str) -> Any:
    current: Any = data
    for key in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def set_nested_value(data: Dict[str, Any], path: str, value: Any) -> None:
    keys = path.split(".")
    current = data
    for key in keys[:-1]:
        if not isinstance(current.get(key), dict):
            current[key] = {}
        current = current[key]
    current[keys[-1]] = value


def validate_config(data: Dict[str, Any]) -> Dict[str, Any]:
    """Check types and ranges, coercing numeric strings to numbers."""
    validated = copy.deepcopy(data)

    registry = validated.get("registry")
    parsed = urlparse(registry) if isinstance(registry, str) else None
    if parsed is None or parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigurationError(f"Invalid registry URL: {registry!r}")

    scope = validated.get("scope")
    if not isinstance(scope, str) or not scope.startswith("@") or "/" in scope:
        raise ConfigurationError(f"Invalid scope: {scope!r}")

    for path in NUMERIC_FIELDS:
        value = get_nested_value(validated, path)
        if value is None:
            continue
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ConfigurationError(
                f"Invalid value for {path}: must be a non-negative number"
            ) from None
        if isinstance(value, bool) or number < 0:
            raise ConfigurationError(
                f"Invalid value for {path}: must be a non-negative number"
            )
        set_nested_value(validated, path, int(number) if number.is_integer() else number)

    for path in BOOLEAN_FIELDS:
        value = get_nested_value(validated, path)
        if value is not None and not isinstance(value, bool):
            raise ConfigurationError(f"Invalid value for {path}: must be a boolean")

    for path in LIST_FIELDS:
        value = get_nested_value(validated, path)
        if value is not None and not isinstance(value, list):
            raise ConfigurationError(f"{path} must be an array")

    if validated.get("concurrency", 1) < 1:
        raise ConfigurationError("concurrency must be at least 1")

    return validated


@dataclass
class DepUpConfig:
    """Typed view over the merged configuration dictionary."""

    registry: str
    scope: str
    packages_dir: Path
    rate_limit_delay: float
    max_packages_per_run: int
    max_packages_per_discovery: int
    concurrency: int
    timeout: float
    retry_attempts: int
    retry_delay: float
    publish_enabled: bool
    prerelease_tag: str
    testing_enabled: bool
    install_methods: List[str]
    harness_methods: List[str]
    discovery_packages: List[str]
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base_dir: Optional[Path] = None) -> "DepUpConfig":
        data = validate_config(merge_configs(DEFAULT_CONFIG, data))
        packages_dir = Path(data["packagesDir"])
        if base_dir is not None and not packages_dir.is_absolute():
            packages_dir = Path(base_dir) / packages_dir
        # Durations are stored in milliseconds, as in the config file.
        return cls(
            registry=data["registry"].rstrip("/"),
            scope=data["scope"],
            packages_dir=packages_dir,
            rate_limit_delay=data["rateLimitDelay"] / 1000,
            max_packages_per_run=int(data["maxPackagesPerRun"]),
            max_packages_per_discovery=int(data["maxPackagesPerDiscovery"]),
            concurrency=int(data["concurrency"]),
            timeout=data["timeout"] / 1000,
            retry_attempts=int(data["retryAttempts"]),
            retry_delay=data["retryDelay"] / 1000,
            publish_enabled=data["publish"]["enabled"],
            prerelease_tag=data["publish"]["prereleaseTag"],
            testing_enabled=data["testing"]["enabled"],
            install_methods=list(data["testing"]["methods"]),
            harness_methods=list(data["testing"]["harnessMethods"]),
            discovery_packages=list(data["discovery"]["packages"]),
            raw=data,
        )

    @property
    def scope_prefix(self) -> str:
        return f"{self.scope}/"

    def scoped_name(self, package_name: str) -> str:
        """Name under the reserved scope; scoped upstream names are flattened."""
        if package_name.startswith("@"):
            package_name = package_name[1:].replace("/", "__")
        return f"{self.scope_prefix}{package_name}"


def config_path(base_dir: Optional[Path] = None) -> Path:
    return Path(base_dir or Path.cwd()) / CONFIG_FILENAME


def load_raw_config(path: Path) -> Dict[str, Any]:
    """Read the user config file, returning an empty dict when it is absent."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        logger.debug("No config file at %s, using defaults", path)
        return {}
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Failed to load config {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a JSON object")
    return data


def load_config(base_dir: Optional[Path] = None) -> DepUpConfig:
    base_dir = Path(base_dir or Path.cwd())
    return DepUpConfig.from_dict(load_raw_config(config_path(base_dir)), base_dir=base_dir)


def save_config(data: Dict[str, Any], base_dir: Optional[Path] = None) -> Dict[str, Any]:
    validated = validate_config(merge_configs(DEFAULT_CONFIG, data))
    path = config_path(base_dir)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(validated, f, indent=2)
        f.write("\n")
    return validated


def create_default_config(base_dir: Optional[Path] = None) -> Dict[str, Any]:
    return save_config({}, base_dir)


def get_config_value(path: str, base_dir: Optional[Path] = None) -> Any:
    merged = merge_configs(DEFAULT_CONFIG, load_raw_config(config_path(base_dir)))
    return get_nested_value(merged, path)


def set_config_value(path: str, value: str, base_dir: Optional[Path] = None) -> Dict[str, Any]:
    """Set a dotted-path value; JSON literals such as ``true`` or ``5`` are decoded."""
    try:
        decoded: Any = json.loads(value)
    except json.JSONDecodeError:
        decoded = value
    data = merge_configs(DEFAULT_CONFIG, load_raw_config(config_path(base_dir)))
    set_nested_value(data, path, decoded)
    return save_config(data, base_dir)


def get_auth_token(required: bool = True) -> Optional[str]:
    token = os.environ.get("NPM_TOKEN")
    if not token and required:
        raise ConfigurationError("NPM_TOKEN environment variable is required for publishing")
    return token or None
