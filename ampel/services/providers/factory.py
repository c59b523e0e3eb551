"""Construct provider adapters from a provider tag."""

from logging import getLogger

import httpx

from ampel.conf.providers import ProviderSettings
from ampel.errors import AuthError
from ampel.models import Provider, TokenValidation
from ampel.services.credentials import ProviderCredentials

from .base import GitProvider
from .bitbucket import BitbucketProvider
from .github import GitHubProvider
from .gitlab import GitLabProvider

logger = getLogger(__name__)

PROVIDER_CLASSES: dict[Provider, type[GitProvider]] = {
    Provider.GITHUB: GitHubProvider,
    Provider.GITLAB: GitLabProvider,
    Provider.BITBUCKET: BitbucketProvider,
}


class ProviderFactory:
    """Build adapters that share one settings object (and, in tests, one transport)."""

    def __init__(
        self,
        settings: ProviderSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings or ProviderSettings()
        self.transport = transport

    def create(self, provider: Provider | str, credentials: ProviderCredentials) -> GitProvider:
        """Create an adapter for ``provider``.

        Raises:
            ValueError: If the provider is not supported
        """
        try:
            provider_type = Provider(provider)
        except ValueError:
            raise ValueError(f"Unsupported provider: {provider}") from None
        provider_class = PROVIDER_CLASSES[provider_type]
        return provider_class(credentials, settings=self.settings, transport=self.transport)

    async def check_credentials(self, provider: Provider | str, credentials: ProviderCredentials) -> TokenValidation:
        """Validate credentials, reporting a rejection as an invalid result instead of raising."""
        async with self.create(provider, credentials) as adapter:
            try:
                return await adapter.validate_credentials()
            except AuthError as e:
                logger.info(f"{adapter.display_name} credentials rejected for account {credentials.account_id}")
                return TokenValidation(is_valid=False, error_message=e.message)
