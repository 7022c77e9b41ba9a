"""Tests for the secret sync orchestrator."""
import base64
from unittest import mock

import pytest
from nacl.public import PrivateKey, SealedBox

from deploysync.secrets.domains.config_loader import SyncConfig
from deploysync.secrets.domains.errors import (
    EncodingError,
    KeyResolutionError,
    PublishError,
    ResolutionError,
    StaleKeyError,
    TransportError,
)
from deploysync.secrets.domains.models import (
    DistributionIdValue,
    EnvironmentKey,
    EnvironmentStatus,
    SecretDefinition,
    SecretStatus,
    StaticValue,
)
from deploysync.secrets.workflows.sync_operations import (
    RecordingPublisher,
    SecretSyncOrchestrator,
    build_definitions,
    sync_secrets,
)


class FakeKeyStore:
    """Key resolver with one keypair per environment; supports rotation and failures."""

    def __init__(self, environments, failures=None):
        self.private_keys = {env: PrivateKey.generate() for env in environments}
        self.versions = {env: 1 for env in environments}
        self.failures = dict(failures or {})
        self.calls = []

    def key_id(self, environment):
        return f"{environment}-key-{self.versions[environment]}"

    def rotate(self, environment):
        self.private_keys[environment] = PrivateKey.generate()
        self.versions[environment] += 1

    def fetch_key(self, environment):
        self.calls.append(environment)
        queued = self.failures.get(environment)
        if queued:
            raise queued.pop(0)
        return EnvironmentKey(
            key_id=self.key_id(environment),
            public_key=bytes(self.private_keys[environment].public_key),
        )

    def open(self, environment, ciphertext):
        box = SealedBox(self.private_keys[environment])
        return box.decrypt(base64.b64decode(ciphertext)).decode("utf-8")


class FakePublisher:
    """Publisher that records calls and can fail per (environment, secret)."""

    def __init__(self, failures=None):
        self.calls = []
        self.failures = dict(failures or {})

    def publish(self, environment, secret_name, sealed):
        self.calls.append((environment, secret_name, sealed))
        queued = self.failures.get((environment, secret_name))
        if queued:
            raise queued.pop(0)
        return True


class FakeLocator:
    def __init__(self, ids):
        self.ids = ids
        self.calls = []

    def resolve(self, environment, rule):
        self.calls.append(environment)
        value = self.ids[environment]
        if isinstance(value, Exception):
            raise value
        return value


@pytest.fixture
def no_sleep():
    return mock.Mock()


def make_orchestrator(environments, definitions, keys, publisher, sleep):
    return SecretSyncOrchestrator(
        environments,
        definitions,
        key_resolver=keys,
        publisher=publisher,
        retry_backoff=0.5,
        sleep=sleep,
    )


def default_definitions(locator):
    return [
        SecretDefinition("DISTRIBUTION_ID", DistributionIdValue(locator, rule=None)),
        SecretDefinition("APP_BUCKET", StaticValue("my-bucket")),
    ]


class TestEndToEnd:
    """Full runs across two environments."""

    def test_four_publish_calls_with_correct_values(self, no_sleep):
        """Test that each (environment, secret) pair is sealed for its own key and published once."""
        environments = ["staging", "production"]
        keys = FakeKeyStore(environments)
        publisher = FakePublisher()
        locator = FakeLocator({"staging": "E111", "production": "E222"})

        report = make_orchestrator(
            environments, default_definitions(locator), keys, publisher, no_sleep
        ).run()

        assert [(env, name) for env, name, _ in publisher.calls] == [
            ("staging", "DISTRIBUTION_ID"),
            ("staging", "APP_BUCKET"),
            ("production", "DISTRIBUTION_ID"),
            ("production", "APP_BUCKET"),
        ]
        plaintexts = [keys.open(env, sealed.ciphertext) for env, _, sealed in publisher.calls]
        assert plaintexts == ["E111", "my-bucket", "E222", "my-bucket"]
        assert [sealed.key_id for _, _, sealed in publisher.calls] == [
            "staging-key-1", "staging-key-1", "production-key-1", "production-key-1",
        ]

        assert report.outcome == "success"
        assert [e.status for e in report.environments] == [EnvironmentStatus.DONE, EnvironmentStatus.DONE]
        assert keys.calls == ["staging", "production"]
        no_sleep.assert_not_called()

    def test_value_sealed_for_one_environment_not_readable_by_another(self, no_sleep):
        environments = ["staging", "production"]
        keys = FakeKeyStore(environments)
        publisher = FakePublisher()

        make_orchestrator(
            environments, [SecretDefinition("APP_BUCKET", StaticValue("b"))], keys, publisher, no_sleep
        ).run()

        staging_sealed = publisher.calls[0][2]
        with pytest.raises(Exception):
            keys.open("production", staging_sealed.ciphertext)


class TestPartialFailure:
    """Failures stay scoped to one environment or one secret."""

    def test_key_failure_isolated_to_environment(self, no_sleep):
        """Test that A's key failure leaves B fully published."""
        keys = FakeKeyStore(
            ["env-a", "env-b"],
            failures={"env-a": [KeyResolutionError("Not Found")]},
        )
        publisher = FakePublisher()
        locator = FakeLocator({"env-a": "EA", "env-b": "EB"})

        report = make_orchestrator(
            ["env-a", "env-b"], default_definitions(locator), keys, publisher, no_sleep
        ).run()

        env_a = report.get("env-a")
        env_b = report.get("env-b")
        assert env_a.status is EnvironmentStatus.FAILED
        assert env_a.error_kind == "key_resolution"
        assert env_a.failed_secrets == ["DISTRIBUTION_ID", "APP_BUCKET"]
        assert env_b.status is EnvironmentStatus.DONE
        assert [(env, name) for env, name, _ in publisher.calls] == [
            ("env-b", "DISTRIBUTION_ID"),
            ("env-b", "APP_BUCKET"),
        ]
        assert locator.calls == ["env-b"]
        assert report.outcome == "partial_success"

    def test_secret_failure_does_not_stop_other_secrets(self, no_sleep):
        """Test that an ambiguous lookup fails only that secret."""
        keys = FakeKeyStore(["production"])
        publisher = FakePublisher()
        locator = FakeLocator({"production": ResolutionError("ambiguous: E1, E2")})

        report = make_orchestrator(
            ["production"], default_definitions(locator), keys, publisher, no_sleep
        ).run()

        env = report.get("production")
        assert env.status is EnvironmentStatus.FAILED
        assert env.failed_secrets == ["DISTRIBUTION_ID"]
        assert env.published_secrets == ["APP_BUCKET"]
        assert [name for _, name, _ in publisher.calls] == ["APP_BUCKET"]
        assert report.outcome == "failure"
        no_sleep.assert_not_called()

    def test_all_environments_failed(self, no_sleep):
        keys = FakeKeyStore(
            ["staging", "production"],
            failures={
                "staging": [KeyResolutionError("Bad credentials")],
                "production": [KeyResolutionError("Bad credentials")],
            },
        )

        report = make_orchestrator(
            ["staging", "production"], [SecretDefinition("APP_BUCKET", StaticValue("b"))],
            keys, FakePublisher(), no_sleep,
        ).run()

        assert report.outcome == "failure"
        assert {r.environment: r.failed_secrets for r in report.environments} == {
            "staging": ["APP_BUCKET"], "production": ["APP_BUCKET"],
        }

    def test_empty_resolved_value_is_a_failure(self, no_sleep):
        """Test that a resolver returning an empty string is never published."""
        keys = FakeKeyStore(["production"])
        publisher = FakePublisher()

        report = make_orchestrator(
            ["production"], [SecretDefinition("DISTRIBUTION_ID", lambda env: "")],
            keys, publisher, no_sleep,
        ).run()

        result = report.get("production").results[0]
        assert result.status is SecretStatus.FAILED
        assert result.error_kind == "resolution"
        assert publisher.calls == []

    def test_unexpected_error_is_recorded(self, no_sleep):
        def broken(environment):
            raise RuntimeError("boom")

        report = make_orchestrator(
            ["production"],
            [SecretDefinition("BROKEN", broken), SecretDefinition("APP_BUCKET", StaticValue("b"))],
            FakeKeyStore(["production"]), FakePublisher(), no_sleep,
        ).run()

        env = report.get("production")
        assert env.results[0].error_kind == "unexpected"
        assert env.results[1].status is SecretStatus.PUBLISHED

    def test_malformed_key_fails_every_secret_without_retry(self, no_sleep):
        class ShortKeys:
            def fetch_key(self, environment):
                return EnvironmentKey(key_id="k", public_key=b"short")

        publisher = FakePublisher()
        report = make_orchestrator(
            ["production"], [SecretDefinition("APP_BUCKET", StaticValue("b"))],
            ShortKeys(), publisher, no_sleep,
        ).run()

        assert report.get("production").results[0].error_kind == EncodingError.kind
        assert publisher.calls == []
        no_sleep.assert_not_called()

    def test_unexpected_key_error_does_not_stop_other_environments(self, no_sleep):
        """Test that a non-sync exception from the key resolver fails only that environment."""
        keys = FakeKeyStore(["staging", "production"], failures={"staging": [ValueError("garbled body")]})
        publisher = FakePublisher()

        report = make_orchestrator(
            ["staging", "production"], [SecretDefinition("APP_BUCKET", StaticValue("b"))],
            keys, publisher, no_sleep,
        ).run()

        staging = report.get("staging")
        assert staging.status is EnvironmentStatus.FAILED
        assert staging.error_kind == "unexpected"
        assert staging.results[0].error_kind == "unexpected"
        assert report.get("production").status is EnvironmentStatus.DONE
        assert [env for env, _, _ in publisher.calls] == ["production"]


class TestRetries:
    """Retry policy: one retry for transport errors, one key refresh for rejected publishes."""

    def test_key_fetch_transport_error_retried_once(self, no_sleep):
        keys = FakeKeyStore(
            ["production"],
            failures={"production": [KeyResolutionError("timeout", retryable=True)]},
        )

        report = make_orchestrator(
            ["production"], [SecretDefinition("APP_BUCKET", StaticValue("b"))],
            keys, FakePublisher(), no_sleep,
        ).run()

        assert report.outcome == "success"
        assert keys.calls == ["production", "production"]
        no_sleep.assert_called_once_with(0.5)

    def test_key_fetch_not_retried_twice(self, no_sleep):
        keys = FakeKeyStore(
            ["production"],
            failures={"production": [
                KeyResolutionError("timeout", retryable=True),
                KeyResolutionError("timeout", retryable=True),
            ]},
        )

        report = make_orchestrator(
            ["production"], [SecretDefinition("APP_BUCKET", StaticValue("b"))],
            keys, FakePublisher(), no_sleep,
        ).run()

        assert report.get("production").status is EnvironmentStatus.FAILED
        assert len(keys.calls) == 2

    def test_locator_transport_error_retried_once(self, no_sleep):
        attempts = []

        def flaky(environment):
            attempts.append(environment)
            if len(attempts) == 1:
                raise TransportError("throttled")
            return "E111"

        keys = FakeKeyStore(["staging"])
        publisher = FakePublisher()
        report = make_orchestrator(
            ["staging"], [SecretDefinition("DISTRIBUTION_ID", flaky)], keys, publisher, no_sleep
        ).run()

        assert report.outcome == "success"
        assert len(attempts) == 2
        assert keys.open("staging", publisher.calls[0][2].ciphertext) == "E111"

    def test_publish_transport_error_retried_then_reported(self, no_sleep):
        publisher = FakePublisher(failures={
            ("production", "APP_BUCKET"): [TransportError("reset"), TransportError("reset")],
        })

        report = make_orchestrator(
            ["production"], [SecretDefinition("APP_BUCKET", StaticValue("b"))],
            FakeKeyStore(["production"]), publisher, no_sleep,
        ).run()

        result = report.get("production").results[0]
        assert result.error_kind == "transport"
        assert len(publisher.calls) == 2

    def test_stale_key_refreshes_and_reseals(self, no_sleep):
        """Test that a rotated key is re-fetched and the value re-sealed for it."""
        keys = FakeKeyStore(["production"])
        publisher = FakePublisher()

        def reject_and_rotate(environment, secret_name, sealed):
            publisher.calls.append((environment, secret_name, sealed))
            if len(publisher.calls) == 1:
                keys.rotate(environment)
                raise StaleKeyError("key rotated")
            return True

        publisher.publish = reject_and_rotate
        report = make_orchestrator(
            ["production"],
            [SecretDefinition("APP_BUCKET", StaticValue("my-bucket")),
             SecretDefinition("AWS_ACCOUNT", StaticValue("123456789012"))],
            keys, publisher, no_sleep,
        ).run()

        assert report.outcome == "success"
        assert [sealed.key_id for _, _, sealed in publisher.calls] == [
            "production-key-1", "production-key-2", "production-key-2",
        ]
        assert keys.open("production", publisher.calls[1][2].ciphertext) == "my-bucket"
        assert keys.open("production", publisher.calls[2][2].ciphertext) == "123456789012"
        assert keys.calls == ["production", "production"]

    def test_refreshed_key_kept_when_retry_also_fails(self, no_sleep):
        """Test that later secrets use the refreshed key even after the retried publish fails."""
        keys = FakeKeyStore(["production"])
        publisher = FakePublisher(failures={
            ("production", "APP_BUCKET"): [StaleKeyError("key rotated"), PublishError("still rejected", retryable=False)],
        })

        def fetch_and_rotate(environment, fetch=keys.fetch_key):
            if keys.calls:
                keys.rotate(environment)
            return fetch(environment)

        keys.fetch_key = fetch_and_rotate
        report = make_orchestrator(
            ["production"],
            [SecretDefinition("APP_BUCKET", StaticValue("my-bucket")),
             SecretDefinition("AWS_ACCOUNT", StaticValue("123456789012"))],
            keys, publisher, no_sleep,
        ).run()

        env = report.get("production")
        assert env.failed_secrets == ["APP_BUCKET"]
        assert env.published_secrets == ["AWS_ACCOUNT"]
        assert [sealed.key_id for _, _, sealed in publisher.calls] == [
            "production-key-1", "production-key-2", "production-key-2",
        ]
        assert keys.open("production", publisher.calls[2][2].ciphertext) == "123456789012"
        assert keys.calls == ["production", "production"]

    def test_publish_error_retried_only_once(self, no_sleep):
        publisher = FakePublisher(failures={
            ("production", "APP_BUCKET"): [PublishError("rejected"), PublishError("rejected again")],
        })

        report = make_orchestrator(
            ["production"], [SecretDefinition("APP_BUCKET", StaticValue("b"))],
            FakeKeyStore(["production"]), publisher, no_sleep,
        ).run()

        result = report.get("production").results[0]
        assert result.error_kind == "publish"
        assert "rejected again" in result.message
        assert len(publisher.calls) == 2

    def test_non_retryable_publish_error_not_retried(self, no_sleep):
        keys = FakeKeyStore(["production"])
        publisher = FakePublisher(failures={
            ("production", "APP_BUCKET"): [PublishError("forbidden", retryable=False)],
        })

        report = make_orchestrator(
            ["production"], [SecretDefinition("APP_BUCKET", StaticValue("b"))],
            keys, publisher, no_sleep,
        ).run()

        assert report.get("production").results[0].error_kind == "publish"
        assert len(publisher.calls) == 1
        assert keys.calls == ["production"]


class TestReport:
    """Machine-readable summary."""

    def test_to_dict_lists_every_pair(self, no_sleep):
        keys = FakeKeyStore(["staging", "production"], failures={"staging": [KeyResolutionError("nope")]})

        report = make_orchestrator(
            ["staging", "production"],
            [SecretDefinition("APP_BUCKET", StaticValue("b")), SecretDefinition("AWS_ACCOUNT", StaticValue("1"))],
            keys, FakePublisher(), no_sleep,
        ).run()
        data = report.to_dict()

        assert data["outcome"] == "partial_success"
        assert [e["status"] for e in data["environments"]] == ["FAILED", "DONE"]
        assert [(f["environment"], f["secret"], f["error_kind"]) for f in data["failures"]] == [
            ("staging", "APP_BUCKET", "key_resolution"),
            ("staging", "AWS_ACCOUNT", "key_resolution"),
        ]
        assert data["environments"][1]["secrets"][0] == {
            "name": "APP_BUCKET", "status": "published", "error_kind": None, "message": None,
        }


class TestBuildDefinitions:
    """Default secret set construction."""

    def _config(self, **overrides):
        settings = dict(
            github_token="t", repo_owner="acme", repo_name="site", domain_name="example.net",
        )
        settings.update(overrides)
        return SyncConfig(**settings)

    def test_dynamic_then_static(self):
        locator = FakeLocator({"production": "E222"})
        definitions = build_definitions(
            self._config(), locator, {"APP_BUCKET": "my-bucket", "CI_IAM_ROLE": "role"}
        )

        assert [d.name for d in definitions] == ["DISTRIBUTION_ID", "APP_BUCKET", "CI_IAM_ROLE"]
        assert definitions[0].resolve("production") == "E222"
        assert definitions[1].resolve("staging") == "my-bucket"

    def test_lookup_rule_from_config(self):
        locator = mock.Mock()
        locator.resolve.return_value = "E1"
        config = self._config(site_subdomain="www", alias_prefixes={"production": "", "staging": "beta-"})

        definitions = build_definitions(config, locator, {})
        definitions[0].resolve("staging")

        rule = locator.resolve.call_args[0][1]
        assert rule.alias_for("staging") == "beta-www.example.net"

    def test_static_distribution_id_ignored(self):
        definitions = build_definitions(self._config(), FakeLocator({}), {"DISTRIBUTION_ID": "x"})

        assert len(definitions) == 1

    def test_empty_static_value_rejected(self):
        with pytest.raises(ResolutionError):
            build_definitions(self._config(), FakeLocator({}), {"APP_BUCKET": "  "})


class TestSyncSecrets:
    """Convenience entry point used by the CLI."""

    def test_dry_run_records_without_publishing(self):
        config = SyncConfig(
            github_token="t", repo_owner="acme", repo_name="site", domain_name="example.net",
            environments=("staging",), retry_backoff=0,
        )
        keys = FakeKeyStore(["staging"])
        recorder = RecordingPublisher()

        report = sync_secrets(
            config, keys, recorder, [SecretDefinition("APP_BUCKET", StaticValue("b"))],
        )

        assert report.outcome == "success"
        assert [(env, name) for env, name, _ in recorder.calls] == [("staging", "APP_BUCKET")]

    def test_environment_override(self):
        config = SyncConfig(
            github_token="t", repo_owner="acme", repo_name="site", domain_name="example.net",
        )
        keys = FakeKeyStore(["production", "staging"])

        report = sync_secrets(
            config, keys, FakePublisher(), [SecretDefinition("APP_BUCKET", StaticValue("b"))],
            environments=["staging"],
        )

        assert [e.environment for e in report.environments] == ["staging"]
