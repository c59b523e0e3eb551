"""Tests for the provider factory."""

import httpx
import pytest
from pydantic import SecretStr

from ampel.errors import NetworkError
from ampel.models import Provider
from ampel.services.credentials import ProviderCredentials
from ampel.services.providers import BitbucketProvider, GitHubProvider, GitLabProvider, ProviderFactory


@pytest.mark.parametrize(
    "provider,expected",
    [
        (Provider.GITHUB, GitHubProvider),
        (Provider.GITLAB, GitLabProvider),
        (Provider.BITBUCKET, BitbucketProvider),
        ("gitlab", GitLabProvider),
    ],
)
def test_create_returns_adapter(provider, expected: type, credentials) -> None:
    adapter = ProviderFactory().create(provider, credentials)

    assert isinstance(adapter, expected)
    assert adapter.credentials is credentials


def test_create_rejects_unknown_provider(credentials) -> None:
    with pytest.raises(ValueError, match="Unsupported provider"):
        ProviderFactory().create("sourcehut", credentials)


def test_create_uses_instance_url() -> None:
    credentials = ProviderCredentials(token=SecretStr("t"), instance_url="https://gitlab.internal")

    adapter = ProviderFactory().create(Provider.GITLAB, credentials)

    assert adapter.base_url == "https://gitlab.internal/api/v4"


@pytest.mark.asyncio
async def test_check_credentials_valid(credentials) -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"id": 3, "login": "tester"}))

    validation = await ProviderFactory(transport=transport).check_credentials(Provider.GITHUB, credentials)

    assert validation.is_valid
    assert validation.username == "tester"


@pytest.mark.asyncio
async def test_check_credentials_rejected(credentials) -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(401, json={"message": "Bad credentials"}))

    validation = await ProviderFactory(transport=transport).check_credentials(Provider.GITHUB, credentials)

    assert not validation.is_valid
    assert validation.error_message


@pytest.mark.asyncio
async def test_check_credentials_propagates_network_errors(credentials) -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(502))

    with pytest.raises(NetworkError):
        await ProviderFactory(transport=transport).check_credentials(Provider.GITHUB, credentials)
