"""GCP Secret Manager lookup for static secret values."""
import logging
from typing import Optional

from google.cloud import secretmanager

logger = logging.getLogger(__name__)


class GCPSecretClient:
    """Reads static values kept in GCP Secret Manager rather than the process environment."""

    def __init__(self, project_id: str):
        self.project_id = project_id
        self._client = None

    @property
    def client(self) -> secretmanager.SecretManagerServiceClient:
        """Lazy-initialize client."""
        if self._client is None:
            self._client = secretmanager.SecretManagerServiceClient()
        return self._client

    def version_path(self, secret_name: str, version: str = "latest") -> str:
        return f"projects/{self.project_id}/secrets/{secret_name}/versions/{version}"

    def fetch(self, secret_name: str, quiet: bool = False) -> Optional[str]:
        """
        Fetch the latest version of a secret.

        Args:
            secret_name: Name of the secret in the configured project
            quiet: If True, suppress warning logs

        Returns:
            Secret value, or None if it is missing, empty or unreachable
        """
        try:
            response = self.client.access_secret_version(
                request={"name": self.version_path(secret_name)}
            )
        except Exception as e:
            if not quiet:
                logger.warning(f"GCP fetch failed for {secret_name} in {self.project_id}: {e}")
            return None

        value = response.payload.data.decode("UTF-8")
        return value or None
