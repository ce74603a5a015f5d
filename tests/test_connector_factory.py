"""
Tests for provider strategies and the connection manager
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from mailsync.domain.email import EmailProvider
from mailsync.services.email_connectors.base_connector import TlsMode
from mailsync.services.email_connectors.connector_factory import (
    ConnectionManager,
    resolve_endpoint,
    strategy_for,
)
from mailsync.utils.errors import AuthenticationError, ConfigurationError
from tests.helpers import make_gmail_account, make_imap_account


class TestResolveEndpoint:
    """Server and TLS selection"""

    def test_gmail_uses_implicit_tls(self):
        assert resolve_endpoint(make_gmail_account()) == ("imap.gmail.com", 993, TlsMode.SSL)

    def test_generic_port_993_uses_implicit_tls(self):
        assert resolve_endpoint(make_imap_account()) == ("mail.example.org", 993, TlsMode.SSL)

    def test_generic_other_port_uses_starttls(self):
        account = make_imap_account(imap_port=143)
        assert resolve_endpoint(account) == ("mail.example.org", 143, TlsMode.STARTTLS)

    def test_generic_without_tls(self):
        account = make_imap_account(imap_port=143, use_tls=False)
        assert resolve_endpoint(account) == ("mail.example.org", 143, TlsMode.NONE)

    def test_missing_host(self):
        with pytest.raises(ConfigurationError):
            resolve_endpoint(make_imap_account(imap_host=""))

    def test_delta_capability(self):
        assert strategy_for(EmailProvider.GMAIL).delta_capable is True
        assert strategy_for(EmailProvider.OUTLOOK).delta_capable is True
        assert strategy_for(EmailProvider.GENERIC_IMAP).delta_capable is False


class TestConnectionManager:
    """Test cases for ConnectionManager"""

    @pytest.fixture
    def connector(self):
        return AsyncMock()

    @pytest.fixture
    def factory(self, connector):
        return MagicMock(return_value=connector)

    @pytest.fixture
    def token_manager(self):
        manager = MagicMock()
        manager.get_valid_access_token = AsyncMock(return_value="fresh-token")
        return manager

    @pytest.fixture
    def manager(self, token_manager, factory):
        return ConnectionManager(token_manager, timeout_seconds=10, connector_factory=factory)

    @pytest.mark.asyncio
    async def test_oauth_account_uses_xoauth2(self, manager, factory, connector):
        account = make_gmail_account()

        async with manager.connection(account) as conn:
            assert conn is connector

        factory.assert_called_once_with(host="imap.gmail.com", port=993, tls_mode=TlsMode.SSL,
                                        timeout_seconds=10, account_id=account.id)
        connector.connect.assert_awaited_once()
        connector.authenticate_xoauth2.assert_awaited_once_with("alice@gmail.com", "fresh-token")
        connector.login.assert_not_called()
        connector.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_generic_account_logs_in_with_password(self, manager, connector, token_manager):
        async with manager.connection(make_imap_account()):
            pass

        connector.login.assert_awaited_once_with("bob@example.org", "hunter2")
        token_manager.get_valid_access_token.assert_not_called()

    @pytest.mark.asyncio
    async def test_closed_when_body_raises(self, manager, connector):
        with pytest.raises(RuntimeError):
            async with manager.connection(make_gmail_account()):
                raise RuntimeError("boom")

        connector.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_closed_when_authentication_fails(self, manager, connector):
        connector.authenticate_xoauth2.side_effect = AuthenticationError("rejected")

        with pytest.raises(AuthenticationError):
            async with manager.connection(make_gmail_account()):
                pytest.fail("body must not run")

        connector.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_token_failure_opens_no_socket(self, manager, factory, token_manager):
        token_manager.get_valid_access_token.side_effect = AuthenticationError("revoked")

        with pytest.raises(AuthenticationError):
            async with manager.connection(make_gmail_account()):
                pass

        factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_closed_when_cancelled(self, manager, connector):
        entered = asyncio.Event()

        async def hold_connection():
            async with manager.connection(make_gmail_account()):
                entered.set()
                await asyncio.sleep(10)

        task = asyncio.create_task(hold_connection())
        await entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        connector.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_with_connection(self, manager, connector):
        connector.list_folders.return_value = []

        result = await manager.with_connection(make_gmail_account(), lambda conn: conn.list_folders())

        assert result == []
        connector.close.assert_awaited_once()
