"""GitHub environment secrets API client."""
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from .errors import KeyResolutionError, PublishError, StaleKeyError, TransportError
from .models import EnvironmentKey, SealedSecret

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_API_VERSION = "2022-11-28"
DEFAULT_TIMEOUT = 10.0
PAGE_SIZE = 100


class GitHubEnvironmentClient:
    """Fetches environment public keys and writes environment secrets."""

    def __init__(
        self,
        token: str,
        owner: str,
        repo: str,
        api_url: str = DEFAULT_API_URL,
        timeout: float = DEFAULT_TIMEOUT,
        api_version: str = DEFAULT_API_VERSION,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.owner = owner
        self.repo = repo
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.api_version = api_version
        self._token = token
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    @property
    def client(self) -> httpx.Client:
        """Lazy-initialize client."""
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.api_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "Accept": "application/vnd.github+json",
                    "Authorization": f"Bearer {self._token}",
                    "X-GitHub-Api-Version": self.api_version,
                },
            )
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> "GitHubEnvironmentClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _secrets_path(self, environment: str) -> str:
        return f"/repos/{self.owner}/{self.repo}/environments/{quote(environment, safe='')}/secrets"

    def fetch_key(self, environment: str) -> EnvironmentKey:
        """
        Fetch the current public key for an environment.

        Args:
            environment: Environment name as configured in the repository

        Returns:
            EnvironmentKey with key id and decoded 32-byte key

        Raises:
            KeyResolutionError: Unknown environment, auth failure, transport or
                HTTP error. Transport errors and 5xx responses are retryable.
        """
        if not environment:
            raise KeyResolutionError("Environment name cannot be empty")

        try:
            response = self.client.get(f"{self._secrets_path(environment)}/public-key")
        except httpx.HTTPError as e:
            raise KeyResolutionError(
                f"HTTP error fetching public key for '{environment}': {e}",
                retryable=isinstance(e, httpx.TransportError),
            ) from e

        if response.status_code != 200:
            raise KeyResolutionError(
                f"Failed to get public key for environment '{environment}': "
                f"HTTP {response.status_code} {_error_message(response)}",
                retryable=response.status_code >= 500,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise KeyResolutionError(
                f"Malformed public key response for environment '{environment}': {e}"
            ) from e
        key = EnvironmentKey.from_api(payload)

        logger.info(f"Fetched public key {key.key_id} for environment '{environment}'")
        return key

    def publish(self, environment: str, secret_name: str, sealed: SealedSecret) -> bool:
        """
        Create or overwrite an environment secret.

        Raises:
            StaleKeyError: If the store rejects the key id
            PublishError: On any other non-success response
            TransportError: On network failure
        """
        uri = f"{self._secrets_path(environment)}/{quote(secret_name, safe='')}"
        body = {"encrypted_value": sealed.ciphertext, "key_id": sealed.key_id}

        try:
            response = self.client.put(uri, json=body)
        except httpx.HTTPError as e:
            raise TransportError(
                f"HTTP error updating secret '{secret_name}' for environment '{environment}': {e}",
                retryable=isinstance(e, httpx.TransportError),
            ) from e

        if response.status_code in (201, 204):
            logger.info(f"Published secret '{secret_name}' to environment '{environment}'")
            return True

        detail = _error_message(response)
        message = (
            f"Failed to update secret '{secret_name}' for environment '{environment}': "
            f"HTTP {response.status_code} {detail}"
        )
        if response.status_code == 409 or (
            response.status_code == 422 and "key" in detail.lower()
        ):
            raise StaleKeyError(message)
        raise PublishError(
            message,
            retryable=response.status_code == 422 or response.status_code >= 500,
        )

    def list_secret_names(self, environment: str) -> List[str]:
        """List secret names stored in an environment (values are never returned)."""
        names: List[str] = []
        page = 1
        while True:
            try:
                response = self.client.get(
                    self._secrets_path(environment),
                    params={"per_page": PAGE_SIZE, "page": page},
                )
            except httpx.HTTPError as e:
                raise TransportError(
                    f"HTTP error listing secrets for '{environment}': {e}",
                    retryable=isinstance(e, httpx.TransportError),
                ) from e

            if response.status_code != 200:
                raise TransportError(
                    f"Failed to list secrets for environment '{environment}': "
                    f"HTTP {response.status_code} {_error_message(response)}",
                    retryable=response.status_code >= 500,
                )

            data: Dict[str, Any] = response.json()
            batch = [item["name"] for item in data.get("secrets", [])]
            names.extend(batch)
            if not batch or len(names) >= data.get("total_count", 0):
                return names
            page += 1


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text
    if isinstance(data, dict):
        return str(data.get("message", data))
    return str(data)
