"""Resolve static secret values once at startup, environment first then GCP."""
import logging
import os
from typing import Dict, Mapping, Optional

from ..domains.config_loader import ConfigError, SyncConfig
from ..domains.gcp_client import GCPSecretClient

logger = logging.getLogger(__name__)

# Module-level cache: {project_id:source_name -> value}, GCP lookups only, per process
_gcp_cache: Dict[str, str] = {}


def clear_cache() -> None:
    _gcp_cache.clear()


def get_static_value(
    source_name: str,
    environ: Optional[Mapping[str, str]] = None,
    project_id: Optional[str] = None,
    client: Optional[GCPSecretClient] = None,
    quiet: bool = False,
) -> Optional[str]:
    """
    Look up one static value.

    Args:
        source_name: Environment variable / GCP secret name holding the value
        environ: Environment mapping (defaults to os.environ)
        project_id: GCP project to fall back to; no fallback when None
        client: GCP client to use instead of a fresh one
        quiet: If True, suppress fallback warnings

    Returns:
        The value, or None if neither source has a non-empty value

    Behavior:
        - Checks environment variables FIRST
        - Falls back to GCP Secret Manager only when a project is configured
        - GCP results are cached per process
    """
    environ = os.environ if environ is None else environ
    env_value = environ.get(source_name)
    if env_value and env_value.strip():
        return env_value

    if not project_id:
        return None

    cache_key = f"{project_id}:{source_name}"
    if cache_key in _gcp_cache:
        return _gcp_cache[cache_key]

    if not quiet:
        logger.info(f"{source_name} not set in environment, trying GCP Secret Manager")

    client = client or GCPSecretClient(project_id)
    value = client.fetch(source_name, quiet=quiet)
    if value:
        _gcp_cache[cache_key] = value
    return value


def resolve_static_values(
    config: SyncConfig,
    environ: Optional[Mapping[str, str]] = None,
    client: Optional[GCPSecretClient] = None,
) -> Dict[str, str]:
    """
    Resolve every static secret of the config into a {secret name -> value} map.

    Literal ``static_values`` win over ``static_sources`` lookups.

    Raises:
        ConfigError: If any static secret has no value anywhere
    """
    values = {name: value for name, value in config.static_values.items() if value.strip()}
    missing = [name for name, value in config.static_values.items() if not value.strip()]

    for secret_name, source_name in config.static_sources.items():
        if secret_name in values:
            continue
        value = get_static_value(source_name, environ, config.gcp_project, client)
        if value:
            values[secret_name] = value
        else:
            missing.append(f"{secret_name} (from {source_name})")

    if missing:
        raise ConfigError(
            f"No value found for static secrets: {', '.join(missing)}\n"
            f"Set the environment variables"
            f"{' or create them in GCP project ' + config.gcp_project if config.gcp_project else ''}."
        )

    logger.debug(f"Resolved static secrets: {', '.join(sorted(values))}")
    return values
