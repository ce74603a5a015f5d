"""
OAuth2 Token Manager

Keeps provider access tokens usable. Refreshes are single-flight per account:
concurrent callers share one in-flight request, and the refreshed pair is
written back through the account repository before anyone uses it.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
from urllib.parse import urlencode

import aiohttp

from mailsync.config import settings as default_settings
from mailsync.db.repositories import AccountRepository
from mailsync.domain.email import EmailAccount, EmailProvider, OAuthCredentials, SyncStatus
from mailsync.utils.datetime_utils import add_seconds, utc_now
from mailsync.utils.errors import (
    AccountNotFoundError,
    AuthenticationError,
    ConfigurationError,
    TokenRefreshError,
    describe_for_user,
)
from mailsync.utils.logging import get_logger
from mailsync.utils.metrics import PrometheusSyncMonitor, SyncMonitor

logger = get_logger("oauth_token_manager")

# (status, parsed JSON body)
TokenTransport = Callable[[str, Dict[str, str]], Awaitable[Tuple[int, Dict[str, Any]]]]

REVOKED_ERRORS = {"invalid_grant", "invalid_client", "unauthorized_client"}

GMAIL_SCOPES = (
    "https://mail.google.com/",
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.send",
    "https://www.googleapis.com/auth/gmail.modify",
)

OUTLOOK_IMAP_SCOPE = "https://outlook.office365.com/IMAP.AccessAsUser.All"
OUTLOOK_SCOPES = (
    "offline_access",
    OUTLOOK_IMAP_SCOPE,
    "https://graph.microsoft.com/Mail.Read",
    "https://graph.microsoft.com/Mail.Send",
    "https://graph.microsoft.com/Mail.ReadWrite",
    "https://graph.microsoft.com/User.Read",
)


@dataclass(frozen=True)
class OAuthProviderConfig:
    token_url: str
    authorize_url: str
    scopes: Tuple[str, ...]
    client_id: Optional[str]
    client_secret: Optional[str]
    # Scopes sent on token requests; Microsoft issues one token per resource
    token_scopes: Optional[Tuple[str, ...]] = None
    extra_authorize_params: Tuple[Tuple[str, str], ...] = ()


def provider_config(provider: EmailProvider, config=None) -> OAuthProviderConfig:
    """Static endpoint and client configuration for an OAuth2 provider."""
    config = config or default_settings
    if provider == EmailProvider.GMAIL:
        return OAuthProviderConfig(
            token_url="https://oauth2.googleapis.com/token",
            authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
            scopes=GMAIL_SCOPES,
            client_id=config.gmail_client_id,
            client_secret=config.gmail_client_secret,
            extra_authorize_params=(("access_type", "offline"), ("prompt", "consent")),
        )
    if provider == EmailProvider.OUTLOOK:
        tenant = config.outlook_tenant_id or "common"
        return OAuthProviderConfig(
            token_url=f"https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token",
            authorize_url=f"https://login.microsoftonline.com/{tenant}/oauth2/v2.0/authorize",
            scopes=OUTLOOK_SCOPES,
            client_id=config.outlook_client_id,
            client_secret=config.outlook_client_secret,
            token_scopes=("offline_access", OUTLOOK_IMAP_SCOPE),
            extra_authorize_params=(("response_mode", "query"),),
        )
    raise ConfigurationError(f"{provider} does not use OAuth2")


class OAuth2TokenManager:
    """
    Supplies valid access tokens for OAuth2 accounts.

    Args:
        accounts: Repository used to re-read and persist credentials.
        config: Settings object (client ids/secrets, margins, timeouts).
        transport: Coroutine performing the form POST; defaults to aiohttp.
        monitor: Receives refresh outcomes.
        clock: Returns the current UTC time.
    """

    def __init__(self, accounts: AccountRepository, config=None,
                 transport: Optional[TokenTransport] = None,
                 monitor: Optional[SyncMonitor] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.accounts = accounts
        self.config = config or default_settings
        self.margin_seconds = self.config.token_refresh_margin_seconds
        self.monitor = monitor or PrometheusSyncMonitor()
        self.clock = clock
        self._transport = transport or self._post_form
        self._session: Optional[aiohttp.ClientSession] = None
        self._inflight: Dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _post_form(self, url: str, data: Dict[str, str]) -> Tuple[int, Dict[str, Any]]:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.oauth_http_timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        async with self._session.post(url, data=data) as response:
            try:
                payload = await response.json(content_type=None)
            except ValueError:
                payload = {}
            return response.status, payload if isinstance(payload, dict) else {}

    async def _request(self, url: str, data: Dict[str, str], account_id: Optional[str]) -> Tuple[int, Dict[str, Any]]:
        try:
            return await self._transport(url, data)
        except asyncio.TimeoutError:
            raise TokenRefreshError("Token endpoint timed out", account_id=account_id)
        except aiohttp.ClientError as e:
            raise TokenRefreshError(f"Token endpoint unreachable: {e}", account_id=account_id)

    def _client_config(self, provider: EmailProvider) -> OAuthProviderConfig:
        config = provider_config(provider, self.config)
        if not config.client_id or not config.client_secret:
            raise ConfigurationError(f"OAuth2 client id/secret not configured for {provider.value}")
        return config

    async def get_valid_access_token(self, account: EmailAccount) -> Optional[str]:
        """
        Return an access token valid for at least the refresh margin.

        Password accounts return None. Expired or near-expiry tokens are
        refreshed once, no matter how many callers ask concurrently.

        Raises:
            AuthenticationError: The refresh token is missing, revoked or rejected.
            TokenRefreshError: The token endpoint failed transiently.
            ConfigurationError: Client credentials are not configured.
        """
        credentials = account.oauth_credentials
        if credentials is None:
            return None
        if credentials.is_fresh(self.clock(), self.margin_seconds):
            return credentials.access_token

        async with self._lock:
            task = self._inflight.get(account.id)
            if task is None:
                task = asyncio.create_task(self._refresh(account.id))
                self._inflight[account.id] = task
                task.add_done_callback(self._forget(account.id))

        # A cancelled caller must not cancel the refresh other callers wait on
        return await asyncio.shield(task)

    def _forget(self, account_id: str):
        def callback(task: asyncio.Task) -> None:
            if self._inflight.get(account_id) is task:
                del self._inflight[account_id]
        return callback

    async def _refresh(self, account_id: str) -> str:
        account = await self.accounts.get_by_id(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found", account_id=account_id)

        credentials = account.oauth_credentials
        if credentials.is_fresh(self.clock(), self.margin_seconds):
            logger.debug(f"Token for {account.email_address} already refreshed elsewhere")
            return credentials.access_token

        if not credentials.refresh_token:
            error = AuthenticationError("No refresh token stored for this account", account_id=account_id)
            await self._mark_needs_reauthentication(account, error)
            raise error

        config = self._client_config(account.provider)
        data = {
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "refresh_token": credentials.refresh_token,
            "grant_type": "refresh_token",
        }
        if config.token_scopes:
            data["scope"] = " ".join(config.token_scopes)

        logger.info(f"Refreshing {account.provider.value} access token for {account.email_address}")
        try:
            status, payload = await self._request(config.token_url, data, account_id)
        except TokenRefreshError:
            self.monitor.token_refreshed(account.provider.value, "error")
            raise

        if status == 200 and payload.get("access_token"):
            refreshed = self._credentials_from_payload(payload, previous=credentials)
            await self.accounts.update_credentials(account_id, refreshed)
            self.monitor.token_refreshed(account.provider.value, "success")
            logger.info(f"Access token for {account.email_address} valid until {refreshed.expires_at}")
            return refreshed.access_token

        error_code = str(payload.get("error", ""))
        if status == 401 or (status == 400 and error_code in REVOKED_ERRORS):
            self.monitor.token_refreshed(account.provider.value, "revoked")
            description = payload.get("error_description") or error_code or f"HTTP {status}"
            error = AuthenticationError(f"Refresh token rejected: {description}", account_id=account_id)
            await self._mark_needs_reauthentication(account, error)
            raise error

        self.monitor.token_refreshed(account.provider.value, "error")
        raise TokenRefreshError(
            f"Token endpoint answered HTTP {status} {error_code}".strip(), account_id=account_id
        )

    def _credentials_from_payload(self, payload: Dict[str, Any],
                                  previous: Optional[OAuthCredentials] = None) -> OAuthCredentials:
        expires_in = payload.get("expires_in")
        expires_at = add_seconds(self.clock(), int(expires_in)) if expires_in is not None else None
        scope = payload.get("scope")
        return OAuthCredentials(
            access_token=payload["access_token"],
            # Providers that do not rotate refresh tokens omit the field
            refresh_token=payload.get("refresh_token") or (previous.refresh_token if previous else None),
            expires_at=expires_at,
            granted_scopes=scope.split() if scope else list(previous.granted_scopes if previous else []),
        )

    async def _mark_needs_reauthentication(self, account: EmailAccount, error: AuthenticationError) -> None:
        # A running pass owns the sync state and records the failure itself
        if account.status == SyncStatus.IN_PROGRESS:
            return
        state = account.sync_state.reject_credentials(self.clock(), describe_for_user(error))
        await self.accounts.update_sync_state(account.id, state)
        logger.warning(f"Account {account.email_address} needs re-authentication: {error}")

    async def exchange_authorization_code(self, provider: EmailProvider, code: str,
                                          redirect_uri: str) -> OAuthCredentials:
        """Trade an authorization code for the initial token pair when a mailbox is linked."""
        config = self._client_config(EmailProvider(provider))
        data = {
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "code": code,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        }
        if config.token_scopes:
            data["scope"] = " ".join(config.token_scopes)

        status, payload = await self._request(config.token_url, data, None)
        if status == 200 and payload.get("access_token"):
            return self._credentials_from_payload(payload)
        if 400 <= status < 500:
            raise AuthenticationError(
                f"Authorization code rejected: {payload.get('error_description') or payload.get('error') or status}"
            )
        raise TokenRefreshError(f"Token endpoint answered HTTP {status}")

    def authorization_url(self, provider: EmailProvider, state: str, redirect_uri: str) -> str:
        config = self._client_config(EmailProvider(provider))
        params = [
            ("client_id", config.client_id),
            ("redirect_uri", redirect_uri),
            ("response_type", "code"),
            ("scope", " ".join(config.scopes)),
            ("state", state),
        ]
        params.extend(config.extra_authorize_params)
        return f"{config.authorize_url}?{urlencode(params)}"
