"""Workflow that seals and publishes secrets into every target environment.

Per environment the state moves PENDING -> KEY_RESOLVED -> (SEALING ->
PUBLISHING)* -> DONE | FAILED. A failure is recorded against the smallest
unit it affects and never stops the rest of the run.
"""
import logging
import time
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple, TypeVar

from ..domains.config_loader import SyncConfig
from ..domains.errors import KeyResolutionError, PublishError, SyncError
from ..domains.models import (
    DistributionIdValue,
    EnvironmentKey,
    EnvironmentReport,
    EnvironmentStatus,
    LookupRule,
    SealedSecret,
    SecretDefinition,
    SecretResult,
    SecretStatus,
    StaticValue,
    SyncReport,
)
from ..domains.sealer import SealFunction, seal_anonymous, seal_for

logger = logging.getLogger(__name__)

T = TypeVar("T")

DYNAMIC_SECRET_NAME = "DISTRIBUTION_ID"


class KeyResolver(Protocol):
    def fetch_key(self, environment: str) -> EnvironmentKey: ...


class Publisher(Protocol):
    def publish(self, environment: str, secret_name: str, sealed: SealedSecret) -> bool: ...


class RecordingPublisher:
    """Publisher for dry runs: remembers what would have been published."""

    def __init__(self):
        self.calls: List[Tuple[str, str, SealedSecret]] = []

    def publish(self, environment: str, secret_name: str, sealed: SealedSecret) -> bool:
        logger.info(f"[dry-run] would publish '{secret_name}' to '{environment}' with key {sealed.key_id}")
        self.calls.append((environment, secret_name, sealed))
        return True


class SecretSyncOrchestrator:
    """Drives key resolution, value resolution, sealing and publishing."""

    def __init__(
        self,
        environments: Iterable[str],
        definitions: Iterable[SecretDefinition],
        key_resolver: KeyResolver,
        publisher: Publisher,
        seal_fn: SealFunction = seal_anonymous,
        retry_backoff: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.environments = list(environments)
        self.definitions = list(definitions)
        self.key_resolver = key_resolver
        self.publisher = publisher
        self.seal_fn = seal_fn
        self.retry_backoff = retry_backoff
        self._sleep = sleep
        self._keys: Dict[str, EnvironmentKey] = {}

    def run(self) -> SyncReport:
        """Sync every environment; always returns a report, never stops early."""
        report = SyncReport()
        for environment in self.environments:
            report.environments.append(self.sync_environment(environment))

        logger.info(
            f"Sync finished: {report.outcome} "
            f"({len(report.failures())} failed secret(s) across {len(self.environments)} environment(s))"
        )
        return report

    def sync_environment(self, environment: str) -> EnvironmentReport:
        report = EnvironmentReport(environment=environment)

        try:
            key = self._with_retry(
                lambda: self.key_resolver.fetch_key(environment),
                f"fetch public key for '{environment}'",
            )
        except SyncError as e:
            logger.error(f"Skipping environment '{environment}': {e}")
            return self._fail_environment(report, e.kind, str(e))
        except Exception as e:
            logger.exception(f"Unexpected error fetching public key for environment '{environment}'")
            return self._fail_environment(report, "unexpected", str(e))

        self._transition(report, EnvironmentStatus.KEY_RESOLVED)
        self._keys[environment] = key

        for definition in self.definitions:
            report.results.append(self._sync_secret(report, definition))

        if report.failed_secrets:
            report.message = f"Failed secrets: {', '.join(report.failed_secrets)}"
            self._transition(report, EnvironmentStatus.FAILED)
        else:
            self._transition(report, EnvironmentStatus.DONE)
        return report

    def _fail_environment(self, report: EnvironmentReport, kind: str, message: str) -> EnvironmentReport:
        report.error_kind = kind
        report.message = message
        report.results = [
            SecretResult(report.environment, d.name, SecretStatus.FAILED, kind, "not attempted: environment key unavailable")
            for d in self.definitions
        ]
        self._transition(report, EnvironmentStatus.FAILED)
        return report

    def _sync_secret(self, report: EnvironmentReport, definition: SecretDefinition) -> SecretResult:
        """Resolve, seal and publish one secret under the environment's current key."""
        environment = report.environment
        try:
            value = self._with_retry(
                lambda: definition.resolve(environment),
                f"resolve '{definition.name}' for '{environment}'",
            )
            self._seal_and_publish(report, definition.name, value)
        except SyncError as e:
            logger.error(f"Secret '{definition.name}' failed for environment '{environment}' [{e.kind}]: {e}")
            return SecretResult(environment, definition.name, SecretStatus.FAILED, e.kind, str(e))
        except Exception as e:
            logger.exception(f"Unexpected error syncing '{definition.name}' for environment '{environment}'")
            return SecretResult(environment, definition.name, SecretStatus.FAILED, "unexpected", str(e))

        return SecretResult(environment, definition.name, SecretStatus.PUBLISHED)

    def _seal_and_publish(self, report: EnvironmentReport, secret_name: str, value: str) -> None:
        environment = report.environment
        try:
            self._publish(report, secret_name, value, self._keys[environment])
            return
        except PublishError as e:
            if not e.retryable:
                raise
            logger.warning(f"Publish of '{secret_name}' to '{environment}' rejected ({e.kind}), refreshing key and retrying")

        # The key may have rotated since it was fetched; never reuse a value sealed for the old key.
        try:
            fresh_key = self._with_retry(
                lambda: self.key_resolver.fetch_key(environment),
                f"refresh public key for '{environment}'",
            )
        except KeyResolutionError as e:
            raise PublishError(f"Key refresh for '{environment}' failed after rejected publish: {e}") from e

        # Later secrets use the refreshed key even if this publish fails again.
        self._keys[environment] = fresh_key
        self._publish(report, secret_name, value, fresh_key)

    def _publish(self, report: EnvironmentReport, secret_name: str, value: str, key: EnvironmentKey) -> None:
        self._transition(report, EnvironmentStatus.SEALING)
        sealed = seal_for(key, value, self.seal_fn)

        self._transition(report, EnvironmentStatus.PUBLISHING)
        self._with_retry(
            lambda: self.publisher.publish(report.environment, secret_name, sealed),
            f"publish '{secret_name}' to '{report.environment}'",
        )

    def _with_retry(self, operation: Callable[[], T], description: str) -> T:
        """Run an operation, retrying exactly once after a backoff on transport failures."""
        try:
            return operation()
        except PublishError:
            raise
        except SyncError as e:
            if not e.retryable:
                raise
            logger.warning(f"Failed to {description} ({e}), retrying in {self.retry_backoff}s")

        self._sleep(self.retry_backoff)
        return operation()

    def _transition(self, report: EnvironmentReport, status: EnvironmentStatus) -> None:
        if report.status is not status:
            logger.debug(f"Environment '{report.environment}': {report.status.value} -> {status.value}")
            report.status = status


def build_definitions(
    config: SyncConfig,
    locator,
    static_values: Mapping[str, str],
) -> List[SecretDefinition]:
    """
    Build the secret set: the per-environment CloudFront distribution id plus
    every static value.
    """
    rule = LookupRule(
        domain_name=config.domain_name,
        subdomain=config.site_subdomain,
        prefixes=dict(config.alias_prefixes),
    )
    definitions = [SecretDefinition(DYNAMIC_SECRET_NAME, DistributionIdValue(locator, rule))]
    for name, value in static_values.items():
        if name == DYNAMIC_SECRET_NAME:
            logger.warning(f"Ignoring static value for {DYNAMIC_SECRET_NAME}, it is always looked up")
            continue
        definitions.append(SecretDefinition(name, StaticValue(value)))
    return definitions


def sync_secrets(
    config: SyncConfig,
    key_resolver: KeyResolver,
    publisher: Publisher,
    definitions: List[SecretDefinition],
    environments: Optional[Iterable[str]] = None,
    seal_fn: SealFunction = seal_anonymous,
) -> SyncReport:
    """Run one sync over the configured (or given) environments."""
    orchestrator = SecretSyncOrchestrator(
        environments=environments or config.environments,
        definitions=definitions,
        key_resolver=key_resolver,
        publisher=publisher,
        seal_fn=seal_fn,
        retry_backoff=config.retry_backoff,
    )
    return orchestrator.run()
