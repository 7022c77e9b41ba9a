"""CloudFront distribution lookup by domain alias."""
import logging
from typing import List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import ResolutionError, TransportError
from .models import LookupRule

logger = logging.getLogger(__name__)

# CloudFront is a global service; its control plane lives in us-east-1.
DEFAULT_REGION = "us-east-1"


class CloudFrontLocator:
    """Resolves distribution ids from the live CloudFront inventory."""

    def __init__(self, session: Optional[boto3.session.Session] = None, region: Optional[str] = None, client=None):
        self._session = session
        self._region = region or DEFAULT_REGION
        self._client = client

    @property
    def client(self):
        """Lazy-initialize client."""
        if self._client is None:
            session = self._session or boto3.session.Session()
            self._client = session.client("cloudfront", region_name=self._region)
        return self._client

    def find_distribution_ids(self, alias: str) -> List[str]:
        """
        Return ids of every distribution that lists ``alias`` among its aliases.

        Matching is case-insensitive and considers all aliases, not only the first.
        """
        target = alias.lower()
        matches = []
        paginator = self.client.get_paginator("list_distributions")
        for page in paginator.paginate():
            distribution_list = page.get("DistributionList") or {}
            for distribution in distribution_list.get("Items") or []:
                aliases = (distribution.get("Aliases") or {}).get("Items") or []
                if any(a.lower() == target for a in aliases):
                    matches.append(distribution["Id"])
        return matches

    def resolve(self, environment: str, rule: LookupRule) -> str:
        """
        Resolve the single distribution id for an environment.

        Raises:
            ResolutionError: If no distribution or more than one matches the alias
            TransportError: If the CloudFront API call fails
        """
        alias = rule.alias_for(environment)
        try:
            matches = self.find_distribution_ids(alias)
        except (BotoCoreError, ClientError) as e:
            raise TransportError(f"CloudFront lookup for '{alias}' failed: {e}") from e

        if not matches:
            raise ResolutionError(f"No CloudFront distribution has alias '{alias}'")
        if len(matches) > 1:
            raise ResolutionError(
                f"Alias '{alias}' is ambiguous, matched distributions: {', '.join(sorted(matches))}"
            )

        logger.info(f"Resolved distribution {matches[0]} for environment '{environment}' ({alias})")
        return matches[0]
