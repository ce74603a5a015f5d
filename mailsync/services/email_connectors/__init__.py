"""
Mailbox connectors.

Supported providers:
- Gmail (IMAP + XOAUTH2)
- Outlook / Microsoft 365 (IMAP + XOAUTH2)
- Generic IMAP servers (password LOGIN)
"""

from .base_connector import FolderInfo, FolderStatus, MailboxConnection, RawEmail, TlsMode
from .connector_factory import ConnectionManager, PROVIDER_STRATEGIES, resolve_endpoint, strategy_for
from .imap_connector import IMAPConnector, build_xoauth2_string

__all__ = [
    "ConnectionManager",
    "FolderInfo",
    "FolderStatus",
    "IMAPConnector",
    "MailboxConnection",
    "PROVIDER_STRATEGIES",
    "RawEmail",
    "TlsMode",
    "build_xoauth2_string",
    "resolve_endpoint",
    "strategy_for",
]
