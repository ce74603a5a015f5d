"""
IMAP Mailbox Connector

Wraps the blocking ``imaplib`` client behind the async ``MailboxConnection``
interface. Every protocol call runs in a worker thread and is bounded by the
command timeout, so a slow server only stalls its own account.
"""

import asyncio
import imaplib
import re
import ssl
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from mailsync.domain.email import EmailFolder
from mailsync.utils.datetime_utils import imap_date
from mailsync.utils.errors import AuthenticationError, MailConnectionError, ProtocolError
from mailsync.utils.logging import get_logger
from .base_connector import FolderInfo, FolderStatus, MailboxConnection, RawEmail, TlsMode

logger = get_logger("imap_connector")

FETCH_ITEMS = "(UID FLAGS INTERNALDATE RFC822.SIZE BODY.PEEK[])"

# RFC 6154 special-use attributes, checked before names
SPECIAL_USE_FLAGS: Dict[EmailFolder, Tuple[str, ...]] = {
    EmailFolder.SENT: ("\\sent",),
    EmailFolder.DRAFTS: ("\\drafts",),
    EmailFolder.ARCHIVE: ("\\archive", "\\all"),
    EmailFolder.JUNK: ("\\junk",),
    EmailFolder.TRASH: ("\\trash",),
}

FOLDER_NAME_FALLBACKS: Dict[EmailFolder, Tuple[str, ...]] = {
    EmailFolder.SENT: ("Sent", "Sent Items", "Sent Mail", "Sent Messages", "[Gmail]/Sent Mail", "INBOX.Sent"),
    EmailFolder.DRAFTS: ("Drafts", "Draft", "[Gmail]/Drafts", "INBOX.Drafts"),
    EmailFolder.ARCHIVE: ("Archive", "Archives", "[Gmail]/All Mail", "INBOX.Archive"),
    EmailFolder.JUNK: ("Junk", "Junk Email", "Spam", "[Gmail]/Spam", "INBOX.Junk"),
    EmailFolder.TRASH: ("Trash", "Deleted Items", "Deleted Messages", "[Gmail]/Trash", "INBOX.Trash"),
}

_LIST_RE = re.compile(r'\((?P<flags>[^)]*)\)\s+(?P<delim>"(?:[^"\\]|\\.)*"|NIL)\s*(?P<name>.*)$')
_STATUS_RE = {
    "uid_validity": re.compile(r"UIDVALIDITY (\d+)"),
    "uid_next": re.compile(r"UIDNEXT (\d+)"),
    "messages": re.compile(r"MESSAGES (\d+)"),
}
_SIZE_RE = re.compile(rb"RFC822\.SIZE (\d+)")


def build_xoauth2_string(user: str, access_token: str) -> str:
    """SASL XOAUTH2 initial response (before base64, which imaplib applies)."""
    return f"user={user}\x01auth=Bearer {access_token}\x01\x01"


def quote_mailbox(name: str) -> str:
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return value


def parse_list_entry(entry) -> Optional[FolderInfo]:
    """
    Parse one item of a LIST response.

    Names sent as IMAP literals arrive as ``(meta, name)`` tuples.
    """
    literal_name = None
    if isinstance(entry, tuple):
        entry, literal_name = entry[0], entry[1]
    if not entry:
        return None
    line = entry.decode("utf-8", errors="replace") if isinstance(entry, bytes) else str(entry)

    match = _LIST_RE.match(line)
    if not match:
        return None

    delimiter = None if match.group("delim") == "NIL" else _unquote(match.group("delim"))
    if literal_name is not None:
        name = literal_name.decode("utf-8", errors="replace") if isinstance(literal_name, bytes) else literal_name
    else:
        name = _unquote(match.group("name"))
    flags = match.group("flags").split()
    return FolderInfo(name=name, delimiter=delimiter, flags=flags)


def _parse_internal_date(meta: bytes) -> Optional[datetime]:
    parsed = imaplib.Internaldate2tuple(meta)
    if parsed is None:
        return None
    return datetime.fromtimestamp(time.mktime(parsed), tz=timezone.utc)


class IMAPConnector(MailboxConnection):
    """IMAP session for one account."""

    def __init__(self, host: str, port: int, tls_mode: TlsMode, timeout_seconds: float = 30,
                 account_id: Optional[str] = None):
        self.host = host
        self.port = port
        self.tls_mode = tls_mode
        self.timeout_seconds = timeout_seconds
        self.account_id = account_id
        self.logger = get_logger(f"imap_connector.{account_id}")

        self._client: Optional[imaplib.IMAP4] = None
        self._folders: Optional[List[FolderInfo]] = None
        self._selected: Optional[FolderStatus] = None

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def _call(self, description: str, fn, *args, **kwargs):
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            raise MailConnectionError(
                f"IMAP {description} timed out after {self.timeout_seconds}s on {self.host}",
                account_id=self.account_id,
            )
        except imaplib.IMAP4.abort as e:
            raise MailConnectionError(f"IMAP connection lost during {description}: {e}", account_id=self.account_id)
        except imaplib.IMAP4.error as e:
            raise ProtocolError(f"IMAP {description} failed: {e}", account_id=self.account_id)
        except ssl.SSLError as e:
            raise MailConnectionError(f"TLS negotiation with {self.host} failed: {e}", account_id=self.account_id)
        except OSError as e:
            raise MailConnectionError(f"Cannot reach {self.host}:{self.port}: {e}", account_id=self.account_id)

    def _check(self, description: str, typ: str, data) -> None:
        if typ != "OK":
            detail = data[0].decode("utf-8", errors="replace") if data and isinstance(data[0], bytes) else data
            raise ProtocolError(f"IMAP {description} returned {typ}: {detail}", account_id=self.account_id)

    def _open_client(self) -> imaplib.IMAP4:
        if self.tls_mode == TlsMode.SSL:
            return imaplib.IMAP4_SSL(self.host, self.port, ssl_context=ssl.create_default_context(),
                                     timeout=self.timeout_seconds)

        client = imaplib.IMAP4(self.host, self.port, timeout=self.timeout_seconds)
        if self.tls_mode == TlsMode.STARTTLS:
            try:
                client.starttls(ssl_context=ssl.create_default_context())
            except Exception:
                client.shutdown()
                raise
        return client

    async def connect(self) -> None:
        self.logger.info(f"Connecting to IMAP server {self.host}:{self.port} ({self.tls_mode.value})")
        if self.tls_mode == TlsMode.NONE:
            self.logger.warning(f"Connection to {self.host} is not encrypted")
        self._client = await self._call("connect", self._open_client)

    async def login(self, username: str, password: str) -> None:
        try:
            typ, data = await self._call("login", self._client.login, username, password)
        except ProtocolError as e:
            raise AuthenticationError(f"IMAP login rejected for {username}: {e}", account_id=self.account_id)
        self._check("login", typ, data)

    async def authenticate_xoauth2(self, user: str, access_token: str) -> None:
        payload = build_xoauth2_string(user, access_token).encode()
        try:
            typ, data = await self._call("authenticate", self._client.authenticate, "XOAUTH2", lambda _: payload)
        except ProtocolError as e:
            raise AuthenticationError(f"XOAUTH2 rejected for {user}: {e}", account_id=self.account_id)
        self._check("authenticate", typ, data)

    async def list_folders(self) -> List[FolderInfo]:
        if self._folders is None:
            typ, data = await self._call("list", self._client.list)
            self._check("list", typ, data)
            self._folders = [info for info in (parse_list_entry(entry) for entry in data or []) if info]
        return self._folders

    async def resolve_folder(self, folder: EmailFolder) -> Optional[str]:
        if folder == EmailFolder.INBOX:
            return "INBOX"

        folders = [f for f in await self.list_folders() if f.selectable]
        wanted_flags = SPECIAL_USE_FLAGS.get(folder, ())
        for flag in wanted_flags:
            for info in folders:
                if flag in {f.lower() for f in info.flags}:
                    return info.name

        by_name = {info.name.lower(): info.name for info in folders}
        for candidate in FOLDER_NAME_FALLBACKS.get(folder, ()):
            if candidate.lower() in by_name:
                return by_name[candidate.lower()]
        return None

    async def select_folder(self, name: str) -> FolderStatus:
        quoted = quote_mailbox(name)
        typ, data = await self._call("status", self._client.status, quoted, "(UIDVALIDITY UIDNEXT MESSAGES)")
        self._check("status", typ, data)

        status_line = b" ".join(d for d in data if isinstance(d, bytes)).decode("utf-8", errors="replace")
        values = {}
        for key, pattern in _STATUS_RE.items():
            match = pattern.search(status_line)
            values[key] = int(match.group(1)) if match else None
        if values["uid_validity"] is None:
            raise ProtocolError(f"Server did not report UIDVALIDITY for {name}", account_id=self.account_id)

        typ, data = await self._call("select", self._client.select, quoted, readonly=True)
        self._check(f"select {name}", typ, data)
        self._selected = FolderStatus(name=name, **values)
        return self._selected

    async def search_uids(self, since_uid: Optional[int] = None,
                          since_date: Optional[datetime] = None) -> List[int]:
        criteria = []
        if since_uid is not None:
            criteria.append(f"UID {since_uid + 1}:*")
        if since_date is not None:
            criteria.append(f"SINCE {imap_date(since_date)}")
        if not criteria:
            criteria.append("ALL")

        typ, data = await self._call("search", self._client.uid, "SEARCH", None, *criteria)
        self._check("search", typ, data)

        raw = data[0] if data else b""
        text = raw.decode() if isinstance(raw, bytes) else (raw or "")
        uids = sorted({int(token) for token in text.split() if token.isdigit()})
        if since_uid is not None:
            # "n:*" always matches the highest UID, even when it is below n
            uids = [uid for uid in uids if uid > since_uid]
        return uids

    async def fetch_message(self, uid: int, folder: EmailFolder) -> Optional[RawEmail]:
        typ, data = await self._call("fetch", self._client.uid, "FETCH", str(uid), FETCH_ITEMS)
        self._check("fetch", typ, data)

        literal = next((item for item in data or [] if isinstance(item, tuple)), None)
        if literal is None:
            return None

        meta = literal[0] + b" " + b" ".join(item for item in data if isinstance(item, bytes))
        size_match = _SIZE_RE.search(meta)
        status = self._selected
        return RawEmail(
            uid=uid,
            folder=folder,
            folder_name=status.name if status else "",
            uid_validity=status.uid_validity if status else 0,
            raw=literal[1] or b"",
            flags=tuple(flag.decode() for flag in imaplib.ParseFlags(meta)),
            internal_date=_parse_internal_date(meta),
            size_bytes=int(size_match.group(1)) if size_match else None,
        )

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            if client.state == "SELECTED":
                await self._call("close", client.close)
            await self._call("logout", client.logout)
            self.logger.debug(f"IMAP connection to {self.host} closed")
        except Exception as e:
            self.logger.warning(f"Error during IMAP disconnect: {e}")
            try:
                client.shutdown()
            except OSError as shutdown_error:
                self.logger.debug(f"Socket shutdown failed: {shutdown_error}")
