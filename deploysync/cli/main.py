"""CLI entrypoint for deploysync."""
import os
import sys
import json
import argparse
import logging
from pathlib import Path

from .validators import validate_environment_name, validate_secret_name

VERSION = "0.1.0"

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_PARTIAL = 3

OUTCOME_EXIT_CODES = {
    "success": EXIT_SUCCESS,
    "partial_success": EXIT_PARTIAL,
    "failure": EXIT_FAILURE,
}

# Configure logging to stderr
logging.basicConfig(
    level=logging.WARNING,
    format="%(message)s",
    stream=sys.stderr
)
logger = logging.getLogger(__name__)


def _configure_verbosity(verbose: int) -> None:
    if verbose >= 2:
        logging.getLogger().setLevel(logging.DEBUG)
    elif verbose == 1:
        logging.getLogger().setLevel(logging.INFO)


def _github_client(config):
    from deploysync.secrets.domains.github_client import GitHubEnvironmentClient

    return GitHubEnvironmentClient(
        config.github_token,
        config.repo_owner,
        config.repo_name,
        api_url=config.api_url,
        timeout=config.timeout,
    )


def _print_report(report) -> None:
    """Human-readable summary on stderr."""
    for env_report in report.environments:
        published = len(env_report.published_secrets)
        total = len(env_report.results)
        print(f"{env_report.environment}: {env_report.status.value} ({published}/{total} published)", file=sys.stderr)
        if env_report.error_kind:
            print(f"  [{env_report.error_kind}] {env_report.message}", file=sys.stderr)
            continue
        for result in env_report.results:
            if not result.ok:
                print(f"  {result.secret_name}: [{result.error_kind}] {result.message}", file=sys.stderr)

    labels = {
        "success": "All environments synchronized",
        "partial_success": "Partial success: some environments failed",
        "failure": "Failure: no environment was fully synchronized",
    }
    print(labels[report.outcome], file=sys.stderr)


def cmd_version(args):
    """Show version information."""
    print(f"deploysync {VERSION}")


def cmd_sync(args):
    """Seal and publish every secret into every target environment."""
    from deploysync.secrets.domains.config_loader import load_config
    from deploysync.secrets.domains.resource_locator import CloudFrontLocator
    from deploysync.secrets.domains.sealer import sealer_for_mode
    from deploysync.secrets.workflows.static_values import resolve_static_values
    from deploysync.secrets.workflows.sync_operations import (
        RecordingPublisher,
        build_definitions,
        sync_secrets,
    )

    config = load_config(args.config)

    environments = args.env or list(config.environments)
    for environment in environments:
        validate_environment_name(environment)

    static_values = resolve_static_values(config)
    for secret_name in static_values:
        validate_secret_name(secret_name)

    locator = CloudFrontLocator(region=config.aws_region)
    definitions = build_definitions(config, locator, static_values)

    with _github_client(config) as client:
        publisher = RecordingPublisher() if args.dry_run else client
        report = sync_secrets(
            config,
            key_resolver=client,
            publisher=publisher,
            definitions=definitions,
            environments=environments,
            seal_fn=sealer_for_mode(config.sealing_mode),
        )

    if not args.quiet:
        _print_report(report)
    print(json.dumps(report.to_dict(), indent=2))
    sys.exit(OUTCOME_EXIT_CODES[report.outcome])


def cmd_key(args):
    """Show the current public key of an environment."""
    from deploysync.secrets.domains.config_loader import load_config

    validate_environment_name(args.environment)
    config = load_config(args.config)

    with _github_client(config) as client:
        key = client.fetch_key(args.environment)

    if args.quiet:
        print(key.encoded)
    else:
        print(f"Environment '{args.environment}'")
        print(f"  key_id: {key.key_id}")
        print(f"  key:    {key.encoded}")


def cmd_list(args):
    """List secret names stored in an environment."""
    from deploysync.secrets.domains.config_loader import load_config

    validate_environment_name(args.environment)
    config = load_config(args.config)

    with _github_client(config) as client:
        names = client.list_secret_names(args.environment)

    for name in names:
        print(name)


def cmd_config_set_path(args):
    """Remember a config file for later runs, after checking that it parses."""
    from deploysync.secrets.domains.config_loader import ConfigError, _read_yaml
    from deploysync.secrets.domains.preferences import set_preference

    config_path = Path(args.path).expanduser().resolve()
    if not config_path.is_file():
        print(f"Error: Config file does not exist: {config_path}", file=sys.stderr)
        sys.exit(EXIT_FAILURE)

    try:
        sections = _read_yaml(str(config_path))
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_FAILURE)

    set_preference("config_path", str(config_path))
    print(f"Config path set to: {config_path}")
    if not sections:
        print("Note: the file is empty, settings will come from environment variables")


def cmd_config_show(args):
    """Show which config file a sync would read and which env vars override it."""
    from deploysync.secrets.domains import config_loader
    from deploysync.secrets.domains.preferences import get_preference

    preferred = get_preference("config_path")
    resolved = config_loader._get_config_path()

    if resolved is None:
        if preferred:
            print(f"Config path (from preference, but file not found): {preferred}")
        print(f"Config path: {config_loader.DEFAULT_CONFIG_PATH}")
        print("Source: none (file not found, environment variables only)")
    else:
        print(f"Config path: {resolved}")
        print(f"Source: {'preference' if resolved == preferred else 'default'}")

    overrides = [name for name in (*config_loader.ENV_OVERRIDES, "DEPLOYSYNC_ENVIRONMENTS") if os.environ.get(name)]
    print(f"Environment overrides: {', '.join(overrides) if overrides else 'none'}")


def cmd_config_clear(args):
    """Forget the config path preference."""
    from deploysync.secrets.domains import config_loader
    from deploysync.secrets.domains.preferences import clear_preference, get_preference

    if get_preference("config_path") is None:
        print("No config path preference set")
        return

    clear_preference("config_path")
    fallback = config_loader._get_config_path() or "environment variables only"
    print(f"Config path preference cleared. Next sync reads: {fallback}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deploysync",
        description="deploysync - seal deployment values into GitHub environment secrets",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Exit codes:
  0 - Success (every environment synchronized)
  1 - Failure (no environment fully synchronized, or a runtime error)
  2 - Usage error (invalid arguments, invalid secret or environment name)
  3 - Partial success (some environments synchronized)

Environment variables:
  GITHUB_TOKEN, REPO_OWNER, REPO_NAME - target repository and credentials
  BUCKET_NAME, AWS_ACCOUNT, IAM_ROLE  - static secret values
  DOMAIN_NAME                         - domain used to find CloudFront distributions
  DEPLOYSYNC_ENVIRONMENTS             - comma-separated target environments
  GCP_PROJECT                         - fall back to GCP Secret Manager for static values

Configuration:
  Default location: ~/.config/deploysync/config.yml (optional)
  Custom path: Set with 'deploysync config set-path <path>'
        """
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (-v info, -vv debug)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser(
        "version",
        help="Show version information",
        description="Display the current version of deploysync"
    )

    sync_parser = subparsers.add_parser(
        "sync",
        help="Publish secrets to every environment",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="""
Resolve, seal and publish every secret into every target environment.

For each environment the public key is fetched once, then each secret is
resolved (static value or CloudFront lookup), sealed for that key and
written. A failing secret or environment does not stop the others.

A JSON report of every (environment, secret) pair is printed to stdout.
        """
    )
    sync_parser.add_argument("--config", help="Path to YAML config file")
    sync_parser.add_argument(
        "--env",
        action="append",
        metavar="NAME",
        help="Target environment (repeatable; defaults to configured environments)"
    )
    sync_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Resolve and seal values but do not publish them"
    )
    sync_parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Only print the JSON report"
    )

    key_parser = subparsers.add_parser(
        "key",
        help="Show an environment's public key",
        description="Fetch the current public key and key id of an environment"
    )
    key_parser.add_argument("environment", help="Environment name")
    key_parser.add_argument("--config", help="Path to YAML config file")
    key_parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Output only the base64 key"
    )

    list_parser = subparsers.add_parser(
        "list",
        help="List secret names in an environment",
        description="List the names of secrets stored in an environment (values are never readable)"
    )
    list_parser.add_argument("environment", help="Environment name")
    list_parser.add_argument("--config", help="Path to YAML config file")

    config_parser = subparsers.add_parser(
        "config",
        help="Configuration management",
        description="Manage deploysync configuration"
    )
    config_subparsers = config_parser.add_subparsers(dest="config_command")

    config_set_path_parser = config_subparsers.add_parser(
        "set-path",
        help="Set config file path",
        description="Store the absolute config file path in ~/.config/deploysync/preferences.json"
    )
    config_set_path_parser.add_argument("path", help="Path to config file")

    config_subparsers.add_parser(
        "show",
        help="Show current config path",
        description="Display the current configuration file path and its source"
    )
    config_subparsers.add_parser(
        "clear",
        help="Clear config path preference",
        description="Remove the config path preference and fall back to the default location"
    )

    return parser


def main(argv=None):
    """Main CLI entrypoint.

    Exit codes:
        0 - Success
        1 - Failure or runtime error (configuration, authentication, network, etc.)
        2 - Usage errors (invalid arguments, invalid names, etc.)
        3 - Partial success
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(EXIT_USAGE)

    _configure_verbosity(args.verbose)

    handlers = {
        "version": cmd_version,
        "sync": cmd_sync,
        "key": cmd_key,
        "list": cmd_list,
    }
    config_handlers = {
        "set-path": cmd_config_set_path,
        "show": cmd_config_show,
        "clear": cmd_config_clear,
    }

    try:
        if args.command == "config":
            handler = config_handlers.get(args.config_command)
            if handler is None:
                print("Usage: deploysync config {set-path,show,clear}", file=sys.stderr)
                sys.exit(EXIT_USAGE)
            handler(args)
        else:
            handlers[args.command](args)
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        sys.exit(EXIT_FAILURE)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_FAILURE)


if __name__ == "__main__":
    main()
