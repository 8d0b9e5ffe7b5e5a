"""Local delivery into mbox files below the mail directory."""

from __future__ import annotations

import logging
import os
import subprocess
import time
from collections.abc import Iterable, Iterator

from .queue import QueueItem
from .util import DeliveryDeferred, DeliveryFailed, open_locked

logger = logging.getLogger("dmailer")

MAILDIR = "/var/mail"
DEFAULT_MBOX_HELPER = "/usr/local/lib/dma-mbox-create"
LOCK_TIMEOUT = 100
MAX_LINE_LENGTH = 1000

_LOCK_POLL_INTERVAL = 0.1


def _encode(text: str) -> bytes:
    return text.encode("utf-8", "surrogateescape")


def _write_all(fd: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = os.write(fd, view)
        view = view[written:]


def escape_mbox_lines(lines: Iterable[str]) -> Iterator[str]:
    """Yield message lines with ``>*From `` lines escaped by one more ``>``.

    Raises DeliveryFailed on a line without its newline, which only a
    corrupted queue file can hold.
    """
    for line in lines:
        if not line.endswith("\n"):
            logger.critical("local delivery failed: corrupted queue file")
            raise DeliveryFailed("corrupted queue file")
        if line.lstrip(">").startswith("From "):
            yield ">" + line
        else:
            yield line


def create_mbox(name: str, helper: str = DEFAULT_MBOX_HELPER) -> None:
    """Run the mbox creation helper for name.

    Raises DeliveryDeferred when the helper cannot run, hangs or fails.
    """
    try:
        result = subprocess.run([helper, name], timeout=LOCK_TIMEOUT, close_fds=True)
    except subprocess.TimeoutExpired as exc:
        logger.error("hung child while creating mbox `%s'", name)
        raise DeliveryDeferred(f"hung child while creating mbox `{name}'") from exc
    except OSError as exc:
        logger.error("cannot execute %s: %s", helper, exc)
        raise DeliveryDeferred(f"cannot execute {helper}: {exc}") from exc
    if result.returncode != 0:
        logger.error("error creating mbox `%s'", name)
        raise DeliveryDeferred(f"error creating mbox `{name}'")


def _lock_mbox(path: str, timeout: float = LOCK_TIMEOUT) -> int:
    deadline = time.monotonic() + timeout
    while True:
        try:
            return open_locked(path, os.O_WRONLY | os.O_APPEND, nonblock=True)
        except BlockingIOError:
            if time.monotonic() >= deadline:
                raise TimeoutError(f"can not lock `{path}'") from None
            time.sleep(_LOCK_POLL_INTERVAL)


def _open_mbox(path: str, name: str, helper: str) -> int:
    created = False
    while True:
        try:
            return _lock_mbox(path)
        except TimeoutError as exc:
            logger.info("local delivery deferred: can not lock `%s'", path)
            raise DeliveryDeferred(f"local delivery deferred: can not lock `{path}'") from exc
        except (PermissionError, FileNotFoundError) as exc:
            if created:
                logger.error("local delivery deferred: can not create `%s'", path)
                raise DeliveryDeferred(
                    f"local delivery deferred: can not create `{path}'"
                ) from exc
            try:
                create_mbox(name, helper)
            except DeliveryDeferred as inner:
                logger.error("local delivery deferred: can not create `%s'", path)
                raise DeliveryDeferred(
                    f"local delivery deferred: can not create `{path}'"
                ) from inner
            created = True
        except OSError as exc:
            logger.info("local delivery deferred: can not open `%s': %s", path, exc)
            raise DeliveryDeferred(
                f"local delivery deferred: can not open `{path}': {exc.strerror}"
            ) from exc


def _truncate(fd: int, length: int, path: str) -> None:
    try:
        os.ftruncate(fd, length)
    except OSError as exc:
        logger.warning("error recovering mbox `%s': %s", path, exc)


def deliver_local(
    item: QueueItem,
    maildir: str = MAILDIR,
    helper: str = DEFAULT_MBOX_HELPER,
    now: float | None = None,
) -> None:
    """Append the message of item to the recipient's mbox.

    Raises DeliveryDeferred for temporary and DeliveryFailed for permanent
    failures; a partly written message is cut off again.
    """
    path = os.path.join(maildir, item.addr)
    fd = _open_mbox(path, item.addr, helper)
    try:
        mboxlen = os.lseek(fd, 0, os.SEEK_END)
        newline = "" if mboxlen == 0 else "\n"
        sender = item.sender or "MAILER-DAEMON"

        try:
            item.mailf.seek(0)
        except (OSError, ValueError, AttributeError) as exc:
            logger.info("local delivery deferred: can not seek: %s", exc)
            raise DeliveryDeferred(f"local delivery deferred: can not seek: {exc}") from exc

        header = f"{newline}From {sender} {time.ctime(now)}\n"
        if len(header) >= MAX_LINE_LENGTH:
            logger.info("local delivery deferred: can not write header")
            raise DeliveryDeferred("local delivery deferred: can not write header")

        try:
            _write_all(fd, _encode(header))
            for line in escape_mbox_lines(item.mailf):
                _write_all(fd, _encode(line))
        except DeliveryFailed:
            _truncate(fd, mboxlen, path)
            raise
        except OSError as exc:
            logger.error("local delivery failed: write error: %s", exc)
            _truncate(fd, mboxlen, path)
            raise DeliveryDeferred(f"local delivery failed: write error: {exc}") from exc
    finally:
        os.close(fd)