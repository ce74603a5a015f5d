"""
Connection Manager

Opens authenticated mailbox sessions for accounts. Provider differences
(server, authentication mechanism, incremental strategy) live in a static
strategy table keyed by ``EmailProvider``; adding a provider is a table entry.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from mailsync.config import settings
from mailsync.domain.email import EmailAccount, EmailProvider
from mailsync.utils.errors import ConfigurationError
from mailsync.utils.logging import get_logger
from .base_connector import MailboxConnection, TlsMode
from .imap_connector import IMAPConnector

logger = get_logger("connector_factory")

T = TypeVar("T")

AUTH_XOAUTH2 = "xoauth2"
AUTH_PASSWORD = "password"


@dataclass(frozen=True)
class ProviderStrategy:
    """How to reach and authenticate one kind of mailbox."""
    imap_host: Optional[str]
    imap_port: int
    auth_mechanism: str
    # Stable UIDs let incremental passes resume from the last UID per folder
    delta_capable: bool


PROVIDER_STRATEGIES: Dict[EmailProvider, ProviderStrategy] = {
    EmailProvider.GMAIL: ProviderStrategy("imap.gmail.com", 993, AUTH_XOAUTH2, delta_capable=True),
    EmailProvider.OUTLOOK: ProviderStrategy("outlook.office365.com", 993, AUTH_XOAUTH2, delta_capable=True),
    EmailProvider.GENERIC_IMAP: ProviderStrategy(None, 993, AUTH_PASSWORD, delta_capable=False),
}


def strategy_for(provider: EmailProvider) -> ProviderStrategy:
    try:
        return PROVIDER_STRATEGIES[EmailProvider(provider)]
    except (KeyError, ValueError):
        raise ConfigurationError(f"Unsupported provider: {provider}")


def resolve_endpoint(account: EmailAccount) -> Tuple[str, int, TlsMode]:
    """
    Server address and TLS mode for an account.

    OAuth providers always use TLS on connect. Generic servers use TLS on
    connect on port 993, STARTTLS on any other port, or no TLS when the
    account disables it.
    """
    strategy = strategy_for(account.provider)
    if strategy.imap_host:
        return strategy.imap_host, strategy.imap_port, TlsMode.SSL

    creds = account.imap_credentials
    if creds is None or not creds.imap_host:
        raise ConfigurationError(f"No IMAP host configured for {account.email_address}", account_id=account.id)

    port = creds.imap_port or strategy.imap_port
    if not creds.use_tls:
        return creds.imap_host, port, TlsMode.NONE
    if port == 993:
        return creds.imap_host, port, TlsMode.SSL
    return creds.imap_host, port, TlsMode.STARTTLS


class ConnectionManager:
    """
    Opens, authenticates and always closes mailbox sessions.

    Args:
        token_manager: Supplies fresh OAuth2 access tokens.
        timeout_seconds: Connect and per-command timeout.
        connector_factory: Builds the protocol adapter; tests inject fakes.
    """

    def __init__(self, token_manager, timeout_seconds: Optional[float] = None,
                 connector_factory: Optional[Callable[..., MailboxConnection]] = None):
        self.token_manager = token_manager
        self.timeout_seconds = timeout_seconds or settings.imap_timeout_seconds
        self._connector_factory = connector_factory or IMAPConnector
        self.logger = get_logger("connection_manager")

    @staticmethod
    def is_delta_capable(account: EmailAccount) -> bool:
        return strategy_for(account.provider).delta_capable

    async def _open(self, account: EmailAccount) -> MailboxConnection:
        host, port, tls_mode = resolve_endpoint(account)
        strategy = strategy_for(account.provider)

        # Resolve the token before touching the network so auth failures never leave a socket behind
        access_token = None
        if strategy.auth_mechanism == AUTH_XOAUTH2:
            access_token = await self.token_manager.get_valid_access_token(account)

        connector = self._connector_factory(host=host, port=port, tls_mode=tls_mode,
                                            timeout_seconds=self.timeout_seconds, account_id=account.id)
        try:
            await connector.connect()
            if strategy.auth_mechanism == AUTH_XOAUTH2:
                await connector.authenticate_xoauth2(account.email_address, access_token)
            else:
                creds = account.imap_credentials
                await connector.login(creds.username or account.email_address, creds.password)
        except BaseException:
            await asyncio.shield(connector.close())
            raise

        self.logger.info(f"Authenticated {account.email_address} on {host}:{port}")
        return connector

    @asynccontextmanager
    async def connection(self, account: EmailAccount) -> AsyncIterator[MailboxConnection]:
        """Yield a live session; it is closed on success, error and cancellation."""
        connector = await self._open(account)
        try:
            yield connector
        finally:
            await asyncio.shield(connector.close())

    async def with_connection(self, account: EmailAccount,
                              fn: Callable[[MailboxConnection], Awaitable[T]]) -> T:
        async with self.connection(account) as connector:
            return await fn(connector)
