"""Input validation for CLI arguments."""
import re
import sys

SECRET_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def validate_secret_name(name: str) -> None:
    """
    Validate a secret name against GitHub's naming rules.

    Names may contain only letters, digits and underscores, must not start
    with a digit, and must not start with the reserved ``GITHUB_`` prefix.

    Raises:
        SystemExit with code 2 if validation fails
    """
    if not name:
        print("Error: Secret name cannot be empty", file=sys.stderr)
        sys.exit(2)

    if not SECRET_NAME_PATTERN.match(name):
        print(f"Error: Invalid secret name '{name}'", file=sys.stderr)
        print("\nAllowed characters: letters, numbers, underscores (_)", file=sys.stderr)
        print("Names cannot start with a number.", file=sys.stderr)
        print("\nExamples of valid names:", file=sys.stderr)
        print("  ✓ DISTRIBUTION_ID", file=sys.stderr)
        print("  ✓ APP_BUCKET", file=sys.stderr)
        print("\nExamples of invalid names:", file=sys.stderr)
        print("  ✗ app-bucket (contains hyphen)", file=sys.stderr)
        print("  ✗ 1ST_SECRET (starts with a number)", file=sys.stderr)
        sys.exit(2)

    if name.upper().startswith("GITHUB_"):
        print(f"Error: Secret name '{name}' uses the reserved GITHUB_ prefix", file=sys.stderr)
        sys.exit(2)


def validate_environment_name(name: str) -> None:
    """
    Validate a deployment environment name is usable in an API path.

    Raises:
        SystemExit with code 2 if validation fails
    """
    if not name or not name.strip():
        print("Error: Environment name cannot be empty", file=sys.stderr)
        sys.exit(2)

    if "/" in name:
        print(f"Error: Invalid environment name '{name}' (contains '/')", file=sys.stderr)
        sys.exit(2)
