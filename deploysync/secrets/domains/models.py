"""Domain models for environment secret synchronization."""
import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from .errors import EncodingError, ResolutionError

# Environment name -> prefix put in front of the site subdomain.
DEFAULT_ALIAS_PREFIXES = {
    "production": "",
    "staging": "stage-",
}
DEFAULT_SITE_SUBDOMAIN = "pizza"

ValueResolver = Callable[[str], str]


class SecretStatus(str, Enum):
    PUBLISHED = "published"
    FAILED = "failed"


class EnvironmentStatus(str, Enum):
    PENDING = "PENDING"
    KEY_RESOLVED = "KEY_RESOLVED"
    SEALING = "SEALING"
    PUBLISHING = "PUBLISHING"
    DONE = "DONE"
    FAILED = "FAILED"


@dataclass(frozen=True)
class EnvironmentKey:
    """Public key of one deployment environment, valid for a single run."""
    key_id: str
    public_key: bytes

    @classmethod
    def from_api(cls, payload: Mapping[str, Any]) -> "EnvironmentKey":
        """
        Build a key from the ``{"key_id": ..., "key": <base64>}`` API response.

        Raises:
            EncodingError: If the payload is incomplete or the key is not base64
        """
        if not isinstance(payload, Mapping):
            raise EncodingError("Public key response is not a JSON object")
        key_id = payload.get("key_id")
        key = payload.get("key")
        if not key_id or not key:
            raise EncodingError("Public key response is missing 'key_id' or 'key'")
        try:
            public_key = base64.b64decode(key, validate=True)
        except (binascii.Error, ValueError) as e:
            raise EncodingError(f"Public key {key_id} is not valid base64: {e}") from e
        return cls(key_id=str(key_id), public_key=public_key)

    @property
    def encoded(self) -> str:
        return base64.b64encode(self.public_key).decode("ascii")


@dataclass(frozen=True)
class SealedSecret:
    """Ciphertext plus the id of the key it was sealed under."""
    key_id: str
    ciphertext: str  # base64(nonce || box)


@dataclass(frozen=True)
class LookupRule:
    """Derives the CloudFront alias to look up for an environment.

    With the defaults, production maps to ``pizza.<domain>`` and staging to
    ``stage-pizza.<domain>``. Environments without an explicit prefix use
    ``<environment>-``.
    """
    domain_name: str
    subdomain: str = DEFAULT_SITE_SUBDOMAIN
    prefixes: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_ALIAS_PREFIXES))

    def alias_for(self, environment: str) -> str:
        if not self.domain_name:
            raise ResolutionError("No domain name configured for alias lookup")
        prefix = self.prefixes.get(environment)
        if prefix is None:
            prefix = f"{environment}-"
        return f"{prefix}{self.subdomain}.{self.domain_name}"


@dataclass(frozen=True)
class StaticValue:
    """Same value for every environment."""
    value: str

    def __post_init__(self):
        if not self.value or not self.value.strip():
            raise ResolutionError("Static secret value cannot be empty")

    def __call__(self, environment: str) -> str:
        return self.value


@dataclass(frozen=True)
class DistributionIdValue:
    """Looks up the CloudFront distribution id for each environment."""
    locator: Any
    rule: LookupRule

    def __call__(self, environment: str) -> str:
        return self.locator.resolve(environment, self.rule)


@dataclass(frozen=True)
class SecretDefinition:
    """A secret name and the rule producing its plaintext per environment."""
    name: str
    resolver: ValueResolver

    def resolve(self, environment: str) -> str:
        value = self.resolver(environment)
        if value is None or not str(value).strip():
            raise ResolutionError(
                f"Resolver for '{self.name}' produced an empty value for environment '{environment}'"
            )
        return value


@dataclass
class SecretResult:
    environment: str
    secret_name: str
    status: SecretStatus
    error_kind: Optional[str] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is SecretStatus.PUBLISHED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.secret_name,
            "status": self.status.value,
            "error_kind": self.error_kind,
            "message": self.message,
        }


@dataclass
class EnvironmentReport:
    environment: str
    status: EnvironmentStatus = EnvironmentStatus.PENDING
    results: List[SecretResult] = field(default_factory=list)
    error_kind: Optional[str] = None
    message: Optional[str] = None

    @property
    def failed_secrets(self) -> List[str]:
        return [r.secret_name for r in self.results if not r.ok]

    @property
    def published_secrets(self) -> List[str]:
        return [r.secret_name for r in self.results if r.ok]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "environment": self.environment,
            "status": self.status.value,
            "error_kind": self.error_kind,
            "message": self.message,
            "failed_secrets": self.failed_secrets,
            "secrets": [r.to_dict() for r in self.results],
        }


@dataclass
class SyncReport:
    """Outcome of one sync run, per environment and per secret."""
    environments: List[EnvironmentReport] = field(default_factory=list)

    @property
    def outcome(self) -> str:
        """
        "success" when every environment is DONE, "failure" when none is,
        "partial_success" otherwise.
        """
        done = [e for e in self.environments if e.status is EnvironmentStatus.DONE]
        if len(done) == len(self.environments):
            return "success"
        if not done:
            return "failure"
        return "partial_success"

    def get(self, environment: str) -> Optional[EnvironmentReport]:
        for report in self.environments:
            if report.environment == environment:
                return report
        return None

    def failures(self) -> List[SecretResult]:
        return [r for e in self.environments for r in e.results if not r.ok]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome,
            "environments": [e.to_dict() for e in self.environments],
            "failures": [
                {
                    "environment": r.environment,
                    "secret": r.secret_name,
                    "error_kind": r.error_kind,
                    "message": r.message,
                }
                for r in self.failures()
            ],
        }
