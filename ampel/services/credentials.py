"""Provider account credentials: storage interface and per-account token access.

The core never persists plaintext tokens. A :class:`CredentialStore` hands out
decrypted credentials per account; :class:`TokenAccessor` caches them for the
duration of an orchestration and serializes refreshes per account so that
concurrent readers never trigger duplicate refresh calls.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from logging import getLogger
from typing import Protocol

from pydantic import SecretStr

from ampel.errors import AuthError
from ampel.models import Provider

from .encryption import decrypt_token, encrypt_token

logger = getLogger(__name__)


@dataclass(frozen=True)
class ProviderCredentials:
    """An immutable snapshot of one account's credentials.

    Refreshing produces a new instance, so holders always see either the
    old or the new token, never a mix.
    """

    token: SecretStr
    account_id: str = ""
    provider: Provider | None = None
    username: str | None = None  # Bitbucket app passwords use Basic auth with a username
    instance_url: str | None = None
    expires_at: datetime | None = None

    def expires_within(self, seconds: float) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= datetime.now(timezone.utc) + timedelta(seconds=seconds)


class CredentialStore(Protocol):
    """Source of decrypted provider credentials, keyed by account id."""

    async def load(self, account_id: str) -> ProviderCredentials: ...

    async def refresh(self, account_id: str) -> ProviderCredentials: ...


TokenRefresher = Callable[[ProviderCredentials], Awaitable[ProviderCredentials]]


@dataclass
class _StoredAccount:
    provider: Provider | None
    encrypted_token: str
    username: str | None
    instance_url: str | None
    expires_at: datetime | None


class EncryptedCredentialStore:
    """In-memory credential store that keeps tokens encrypted at rest."""

    def __init__(self, secret_key: SecretStr, refresher: TokenRefresher | None = None) -> None:
        """Initialize the store.

        Args:
            secret_key: Secret used to derive the encryption key
            refresher: Optional coroutine that exchanges expiring credentials
                for new ones (OAuth-style accounts); PAT accounts have none
        """
        if not secret_key.get_secret_value():
            raise ValueError("credential_encryption_key is required for the credential store")
        self._secret_key = secret_key
        self._refresher = refresher
        self._accounts: dict[str, _StoredAccount] = {}

    def add_account(
        self,
        account_id: str,
        provider: Provider | None,
        token: SecretStr | str,
        username: str | None = None,
        instance_url: str | None = None,
        expires_at: datetime | None = None,
    ) -> None:
        self._accounts[account_id] = _StoredAccount(
            provider=provider,
            encrypted_token=encrypt_token(token, self._secret_key),
            username=username,
            instance_url=instance_url,
            expires_at=expires_at,
        )

    def remove_account(self, account_id: str) -> None:
        self._accounts.pop(account_id, None)

    async def load(self, account_id: str) -> ProviderCredentials:
        account = self._accounts.get(account_id)
        if account is None:
            raise AuthError("Provider account is not connected")

        token = decrypt_token(account.encrypted_token, self._secret_key)
        if token is None:
            logger.error(f"Could not decrypt stored token for account {account_id}")
            raise AuthError("Stored provider credentials are unreadable; reconnect the account")

        return ProviderCredentials(
            token=token,
            account_id=account_id,
            provider=account.provider,
            username=account.username,
            instance_url=account.instance_url,
            expires_at=account.expires_at,
        )

    async def refresh(self, account_id: str) -> ProviderCredentials:
        current = await self.load(account_id)
        if self._refresher is None:
            raise AuthError("Provider token has expired; reconnect the account")

        refreshed = await self._refresher(current)
        self.add_account(
            account_id,
            current.provider,
            refreshed.token,
            username=refreshed.username or current.username,
            instance_url=current.instance_url,
            expires_at=refreshed.expires_at,
        )
        logger.info(f"Refreshed provider token for account {account_id}")
        return replace(refreshed, account_id=account_id, provider=current.provider)


class TokenAccessor:
    """Per-account credential cache with serialized refresh.

    One instance is passed into each orchestrator invocation. Refreshes for the
    same account run under that account's lock; other accounts are unaffected.
    """

    def __init__(self, store: CredentialStore, refresh_margin_seconds: float = 60) -> None:
        self.store = store
        self.refresh_margin_seconds = refresh_margin_seconds
        self._credentials: dict[str, ProviderCredentials] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        if account_id not in self._locks:
            self._locks[account_id] = asyncio.Lock()
        return self._locks[account_id]

    async def get(self, account_id: str) -> ProviderCredentials:
        """Return usable credentials for an account, refreshing them if they are about to expire.

        Raises:
            AuthError: If the account is unknown or its token cannot be refreshed
        """
        cached = self._credentials.get(account_id)
        if cached is not None and not cached.expires_within(self.refresh_margin_seconds):
            return cached

        async with self._lock_for(account_id):
            # Another task may have refreshed while this one waited for the lock.
            cached = self._credentials.get(account_id)
            if cached is not None and not cached.expires_within(self.refresh_margin_seconds):
                return cached

            credentials = await self.store.load(account_id)
            if credentials.expires_within(self.refresh_margin_seconds):
                logger.info(f"Token for account {account_id} is expiring, refreshing")
                credentials = await self.store.refresh(account_id)

            self._credentials[account_id] = credentials
            return credentials

    def invalidate(self, account_id: str) -> None:
        self._credentials.pop(account_id, None)
