"""Configuration loader for deploysync.

Settings come from an optional YAML file and from environment variables,
with environment variables taking precedence. Everything is read once and
frozen into a SyncConfig that the rest of the run receives explicitly.
"""
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from .models import DEFAULT_ALIAS_PREFIXES, DEFAULT_SITE_SUBDOMAIN
from .preferences import get_preference
from .sealer import DEFAULT_SEALING_MODE, SEALING_MODES

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "deploysync" / "config.yml"
DEFAULT_ENVIRONMENTS = ("production", "staging")

# Secret name -> environment variable (or GCP secret) holding its value.
DEFAULT_STATIC_SOURCES = {
    "APP_BUCKET": "BUCKET_NAME",
    "AWS_ACCOUNT": "AWS_ACCOUNT",
    "CI_IAM_ROLE": "IAM_ROLE",
}

# Environment variable -> SyncConfig field.
ENV_OVERRIDES = {
    "GITHUB_TOKEN": "github_token",
    "REPO_OWNER": "repo_owner",
    "REPO_NAME": "repo_name",
    "DOMAIN_NAME": "domain_name",
    "GITHUB_API_URL": "api_url",
    "AWS_REGION": "aws_region",
    "GCP_PROJECT": "gcp_project",
}


class ConfigError(Exception):
    """Configuration error exception."""
    pass


@dataclass(frozen=True)
class SyncConfig:
    github_token: str
    repo_owner: str
    repo_name: str
    domain_name: str
    environments: Tuple[str, ...] = DEFAULT_ENVIRONMENTS
    static_sources: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_STATIC_SOURCES))
    static_values: Mapping[str, str] = field(default_factory=dict)
    alias_prefixes: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_ALIAS_PREFIXES))
    site_subdomain: str = DEFAULT_SITE_SUBDOMAIN
    api_url: str = "https://api.github.com"
    timeout: float = 10.0
    retry_backoff: float = 1.0
    sealing_mode: str = DEFAULT_SEALING_MODE
    aws_region: Optional[str] = None
    gcp_project: Optional[str] = None

    def __repr__(self) -> str:
        # Keep the token out of logs and tracebacks.
        return (
            f"SyncConfig(repo={self.repo_owner}/{self.repo_name}, "
            f"environments={list(self.environments)}, domain_name={self.domain_name!r})"
        )


def _get_config_path(path: Optional[str] = None) -> Optional[str]:
    """
    Find the YAML config file, if any.

    Priority order:
    1. Explicit path (must exist)
    2. User preference ``config_path``
    3. Default location: ~/.config/deploysync/config.yml

    Returns:
        Absolute path to the config file, or None when running from
        environment variables only

    Raises:
        ConfigError: If an explicit path does not exist
    """
    if path:
        explicit = Path(path).expanduser()
        if not explicit.is_file():
            raise ConfigError(f"Configuration file not found at: {explicit}")
        return str(explicit)

    config_path_pref = get_preference("config_path")
    if config_path_pref:
        preferred = Path(config_path_pref)
        if preferred.is_file():
            logger.info(f"Using config from preference: {preferred}")
            return str(preferred)
        logger.warning(f"Config path from preference doesn't exist: {preferred}")

    if DEFAULT_CONFIG_PATH.is_file():
        logger.info(f"Using default config location: {DEFAULT_CONFIG_PATH}")
        return str(DEFAULT_CONFIG_PATH)

    return None


def _read_yaml(config_path: str) -> Dict[str, Any]:
    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML config at {config_path}: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read config file at {config_path}: {e}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file at {config_path} must contain a mapping")
    return data


def _string_map(value: Any, section: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{section}' must be a mapping")
    return {str(k): "" if v is None else str(v) for k, v in value.items()}


def _flatten(data: Dict[str, Any]) -> Dict[str, Any]:
    """Map the YAML layout onto SyncConfig field names."""
    settings: Dict[str, Any] = {}

    github = data.get("github") or {}
    if not isinstance(github, dict):
        raise ConfigError("'github' section must be a mapping")
    for key, field_name in (
        ("token", "github_token"),
        ("owner", "repo_owner"),
        ("repo", "repo_name"),
        ("api_url", "api_url"),
        ("timeout", "timeout"),
    ):
        if key in github:
            settings[field_name] = github[key]

    for key in (
        "domain_name",
        "environments",
        "site_subdomain",
        "retry_backoff",
        "sealing_mode",
        "aws_region",
        "gcp_project",
    ):
        if key in data:
            settings[key] = data[key]

    if "static_secrets" in data:
        settings["static_sources"] = _string_map(data["static_secrets"], "static_secrets")
    if "static_values" in data:
        settings["static_values"] = _string_map(data["static_values"], "static_values")
    if "alias_prefixes" in data:
        prefixes = dict(DEFAULT_ALIAS_PREFIXES)
        prefixes.update(_string_map(data["alias_prefixes"], "alias_prefixes"))
        settings["alias_prefixes"] = prefixes

    return settings


def _parse_environments(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        raise ConfigError("'environments' must be a list or a comma-separated string")
    environments = tuple(str(e).strip() for e in value if str(e).strip())
    if not environments:
        raise ConfigError("At least one target environment is required")
    if len(set(environments)) != len(environments):
        raise ConfigError(f"Duplicate environments in {list(environments)}")
    return environments


def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> SyncConfig:
    """
    Load and validate configuration.

    Args:
        path: Optional explicit YAML config path
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Immutable SyncConfig

    Raises:
        ConfigError: If the file is unreadable or required settings are missing
    """
    environ = os.environ if environ is None else environ

    settings: Dict[str, Any] = {}
    config_path = _get_config_path(path)
    if config_path:
        settings.update(_flatten(_read_yaml(config_path)))

    for env_name, field_name in ENV_OVERRIDES.items():
        if environ.get(env_name):
            settings[field_name] = environ[env_name]
    if environ.get("DEPLOYSYNC_ENVIRONMENTS"):
        settings["environments"] = environ["DEPLOYSYNC_ENVIRONMENTS"]

    missing = [
        env_name
        for env_name, field_name in ENV_OVERRIDES.items()
        if field_name in ("github_token", "repo_owner", "repo_name", "domain_name")
        and not settings.get(field_name)
    ]
    if missing:
        raise ConfigError(
            f"Missing required settings: {', '.join(missing)}\n"
            f"Set them as environment variables or in the config file."
        )

    if "environments" in settings:
        settings["environments"] = _parse_environments(settings["environments"])

    for numeric in ("timeout", "retry_backoff"):
        if numeric in settings:
            try:
                settings[numeric] = float(settings[numeric])
            except (TypeError, ValueError):
                raise ConfigError(f"'{numeric}' must be a number, got {settings[numeric]!r}")
            if settings[numeric] < 0:
                raise ConfigError(f"'{numeric}' cannot be negative")

    mode = settings.get("sealing_mode", DEFAULT_SEALING_MODE)
    if mode not in SEALING_MODES:
        raise ConfigError(
            f"Unsupported sealing mode: {mode}\n"
            f"Supported modes: {', '.join(SEALING_MODES)}"
        )

    config = SyncConfig(**settings)
    logger.info(f"Configuration loaded{' from ' + config_path if config_path else ' from environment'}")
    logger.debug(f"Using {config!r}")
    return config
