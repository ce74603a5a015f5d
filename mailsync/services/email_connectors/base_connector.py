"""
Base Mailbox Connection

Defines the interface the sync executor uses to talk to a mailbox, plus the
raw value types that cross it. Protocol adapters (IMAP today) implement
``MailboxConnection``; the executor never sees protocol objects.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from mailsync.domain.email import EmailFolder


class TlsMode(str, Enum):
    """How the transport is secured."""
    SSL = "ssl"            # TLS from the first byte (port 993)
    STARTTLS = "starttls"  # plain connect, then upgrade
    NONE = "none"


@dataclass
class FolderInfo:
    """One entry of a LIST response."""
    name: str
    delimiter: Optional[str] = None
    flags: List[str] = field(default_factory=list)

    @property
    def selectable(self) -> bool:
        return "\\noselect" not in {f.lower() for f in self.flags}


@dataclass
class FolderStatus:
    """Mailbox status of a selected folder."""
    name: str
    uid_validity: int
    uid_next: Optional[int] = None
    messages: Optional[int] = None


@dataclass
class RawEmail:
    """An unparsed message fetched from a folder."""
    uid: int
    folder: EmailFolder
    folder_name: str
    uid_validity: int
    raw: bytes
    flags: Tuple[str, ...] = ()
    internal_date: Optional[datetime] = None
    size_bytes: Optional[int] = None


class MailboxConnection(ABC):
    """
    A live, authenticated mailbox session.

    Instances are private to one sync task and are always closed by the
    connection manager, never by the executor.
    """

    @abstractmethod
    async def list_folders(self) -> List[FolderInfo]:
        pass

    @abstractmethod
    async def resolve_folder(self, folder: EmailFolder) -> Optional[str]:
        """
        Map a logical folder to the server's folder name.

        Returns:
            The server name, or None when the mailbox has no such folder.
        """
        pass

    @abstractmethod
    async def select_folder(self, name: str) -> FolderStatus:
        """Select a folder read-only and report its UIDVALIDITY."""
        pass

    @abstractmethod
    async def search_uids(self, since_uid: Optional[int] = None,
                          since_date: Optional[datetime] = None) -> List[int]:
        """
        UIDs in the selected folder matching the criteria, ascending.

        Args:
            since_uid: Only UIDs strictly greater than this value.
            since_date: Only messages received on or after this date.
        """
        pass

    @abstractmethod
    async def fetch_message(self, uid: int, folder: EmailFolder) -> Optional[RawEmail]:
        """Fetch one message by UID; None when it disappeared meanwhile."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Log out and release the transport. Must never raise."""
        pass
