"""In-memory mail queue: recipients, alias expansion and duplicate removal."""

from __future__ import annotations

import enum
import pwd
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import IO

from .config import Config, Features
from .util import EX_DATAERR, DmaError, hostname


class Expand(enum.IntEnum):
    """How far a recipient address is expanded when it is added."""

    NONE = 0
    ADDR = 1
    WILDCARD = 2


@dataclass(eq=False)
class QueueItem:
    """One recipient of a queued message, with its spool files."""

    addr: str
    sender: str | None = None
    remote: bool = False
    queuefn: str | None = None
    mailfn: str | None = None
    queueid: str | None = None
    queuef: IO[str] | None = None
    mailf: IO[str] | None = None


def _user_exists(name: str) -> bool:
    try:
        pwd.getpwnam(name)
    except KeyError:
        return False
    return True


class Queue:
    """A message and the recipients it is to be delivered to.

    Recipients are kept newest first, the order delivery walks them in.
    """

    def __init__(
        self,
        sender: str | None = None,
        *,
        config: Config | None = None,
        aliases: Mapping[str, Sequence[str]] | None = None,
        local_hostname: str | None = None,
        user_lookup: Callable[[str], bool] | None = None,
    ) -> None:
        self.sender = sender
        self.config = config if config is not None else Config()
        self.aliases: dict[str, list[str]] = {
            name: list(dests) for name, dests in (aliases or {}).items()
        }
        self._local_hostname = local_hostname
        self._user_lookup = user_lookup or _user_exists
        self.items: list[QueueItem] = []
        self.id: str | None = None
        self.mailf: IO[str] | None = None
        self.tmpf: str | None = None

    @property
    def local_hostname(self) -> str:
        """The mail name of this host, looked up on first use."""
        if self._local_hostname is None:
            self._local_hostname = hostname(self.config)
        return self._local_hostname

    def _expand_alias(self, name: str) -> bool:
        dests = self.aliases.get(name)
        if dests is None:
            return False
        for dest in dests:
            self.add_recipient(dest, Expand.ADDR)
        return True

    def add_recipient(self, address: str, expand: Expand = Expand.NONE) -> QueueItem | None:
        """Add a recipient and return its item.

        Returns None when the address is a duplicate or was replaced by its
        alias expansion.  Raises DmaError for an unknown local user.
        """
        addr = address
        user, sep, host = addr.rpartition("@")
        if sep and host in (self.local_hostname, "localhost"):
            addr = user

        if any(existing.addr == addr for existing in self.items):
            return None

        item = QueueItem(addr=addr, sender=self.sender)
        self.items.insert(0, item)

        if "@" in addr or Features.NULLCLIENT in self.config.features:
            item.remote = True
            return item

        if expand:
            aliased = self._expand_alias(addr)
            if not aliased and expand == Expand.WILDCARD:
                aliased = self._expand_alias("*")
            if aliased:
                self.items.remove(item)
                return None
            if not self._user_lookup(addr):
                self.items.remove(item)
                raise DmaError(f"invalid recipient `{address}'", EX_DATAERR)
        return item

    def is_empty(self) -> bool:
        """Tell whether the queue has no recipients."""
        return not self.items

    def __iter__(self) -> Iterator[QueueItem]:
        return iter(list(self.items))

    def __len__(self) -> int:
        return len(self.items)