"""Host names, dates, file locking and error types shared by the mail agent."""

from __future__ import annotations

import email.utils
import fcntl
import functools
import itertools
import os
import pwd
import socket
from collections.abc import Iterator

EX_OK = 0
EX_USAGE = 64
EX_DATAERR = 65
EX_NOINPUT = 66
EX_NOUSER = 67
EX_UNAVAILABLE = 69
EX_SOFTWARE = 70
EX_OSERR = 71
EX_CANTCREAT = 73
EX_IOERR = 74
EX_TEMPFAIL = 75
EX_NOPERM = 77
EX_CONFIG = 78

BUF_SIZE = 2048
ERRMSG_SIZE = 1024
USERNAME_SIZE = 50
HOST_NAME_MAX = 255
LOG_IDENT_SIZE = 50

MIN_RETRY = 300
MAX_RETRY = 3 * 60 * 60
MAX_TIMEOUT = 5 * 24 * 60 * 60
SLEEP_TIMEOUT = 30
SMTP_PORT = 25
CON_TIMEOUT = 5 * 60
SPOOL_FLUSHFILE = "flush"
DMA_ROOT_USER = "mail"
DMA_GROUP = "mail"

_HOSTNAME_EXTRA_CHARS = "_.-"


class DmaError(Exception):
    """An error that ends the agent with a sysexits-style exit code."""

    default_exit_code = EX_SOFTWARE

    def __init__(self, message: str = "", exit_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.exit_code = self.default_exit_code if exit_code is None else exit_code


class DeliveryDeferred(DmaError):
    """Delivery failed for now and should be retried later."""

    default_exit_code = EX_TEMPFAIL


class DeliveryFailed(DmaError):
    """Delivery failed permanently; the message has to be bounced."""

    default_exit_code = EX_UNAVAILABLE


def _hostname_prefix(text: str) -> str:
    """Return the leading run of characters that may appear in a host name."""
    return "".join(
        itertools.takewhile(
            lambda c: c.isascii() and (c.isalnum() or c in _HOSTNAME_EXTRA_CHARS),
            text,
        )
    )


@functools.lru_cache(maxsize=None)
def systemhostname() -> str:
    """Return the sanitized host name of this machine."""
    try:
        name = socket.gethostname()
    except OSError:
        name = ""
    name = _hostname_prefix(name[:HOST_NAME_MAX])
    return name or "unknown-hostname"


def hostname(config=None) -> str:
    """Return the mail name: configured, read from a file, or the system name."""
    mailname = getattr(config, "mailname", None)
    if not mailname:
        return systemhostname()
    if mailname.startswith("/"):
        try:
            with open(mailname, encoding="utf-8", errors="replace") as handle:
                first = handle.readline(HOST_NAME_MAX)
        except OSError:
            return systemhostname()
        return _hostname_prefix(first) or systemhostname()
    return mailname[:HOST_NAME_MAX]


def rfc822date(now: float | None = None) -> str:
    """Format a timestamp (default: now) as an RFC 2822 date in local time."""
    return email.utils.formatdate(now, localtime=True)


def starts_with_ci(text: str, prefix: str) -> bool:
    """Tell whether text starts with prefix, ignoring case."""
    return text[: len(prefix)].lower() == prefix.lower()


def _login_candidates(uid: int) -> Iterator[str | None]:
    try:
        yield os.getlogin()
    except OSError:
        pass
    yield os.environ.get("LOGNAME")
    yield os.environ.get("USER")
    try:
        yield pwd.getpwuid(uid).pw_name
    except KeyError:
        pass


def _owned_by(name: str | None, uid: int) -> bool:
    if not name:
        return False
    try:
        return pwd.getpwnam(name).pw_uid == uid
    except KeyError:
        return False


def current_username() -> tuple[str, int]:
    """Return the invoking user's name and uid, or ``uid=N`` if no name fits."""
    uid = os.getuid()
    for name in _login_candidates(uid):
        if _owned_by(name, uid):
            return name[: USERNAME_SIZE - 1], uid
    return f"uid={uid}"[: USERNAME_SIZE - 1], uid


def open_locked(path, flags: int, mode: int = 0o600, nonblock: bool = False) -> int:
    """Open a file and take an exclusive lock on it, returning the descriptor.

    The lock does not block when ``nonblock`` is set or ``flags`` has
    ``O_NONBLOCK``; contention then raises BlockingIOError.
    """
    fd = os.open(path, flags, mode)
    operation = fcntl.LOCK_EX
    if nonblock or flags & os.O_NONBLOCK:
        operation |= fcntl.LOCK_NB
    try:
        fcntl.flock(fd, operation)
    except BaseException:
        os.close(fd)
        raise
    return fd


def log_ident(base: str | None = "dma", suffix: str | None = None) -> str:
    """Build the syslog ident, ``base`` or ``base[suffix]``."""
    base = base or "dma"
    if suffix is None:
        tag = base
    else:
        tag = f"{base}[{suffix[: LOG_IDENT_SIZE - 1]}]"
    return tag[: LOG_IDENT_SIZE - 1]