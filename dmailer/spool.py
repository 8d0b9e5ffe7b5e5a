"""On-disk spool: queue files (``Q<id>``) and message files (``M<id>``)."""

from __future__ import annotations

import fcntl
import logging
import os
import stat
import tempfile
import time

from .config import Config
from .queue import Expand, Queue, QueueItem
from .util import EX_NOINPUT, SPOOL_FLUSHFILE, DmaError, open_locked

logger = logging.getLogger("dmailer")

_ENCODING = "utf-8"
_ERRORS = "surrogateescape"


def _unlink_quietly(path: str | None) -> None:
    if path is None:
        return
    try:
        os.unlink(path)
    except OSError:
        pass


def _close_quietly(handle) -> None:
    if handle is not None:
        try:
            handle.close()
        except OSError:
            pass


class Spool:
    """The spool directory named by the configuration."""

    def __init__(self, config: Config | None = None, local_hostname: str | None = None) -> None:
        self.config = config if config is not None else Config()
        self.local_hostname = local_hostname
        self._tmpfiles: list[str] = []

    @property
    def directory(self) -> str:
        return self.config.spooldir

    def _path(self, name: str) -> str:
        return os.path.join(self.directory, name)

    def new_spool_file(self, queue: Queue) -> str:
        """Create the locked temporary message file and assign the queue id."""
        fd, path = tempfile.mkstemp(prefix="tmp_", dir=self.directory)
        try:
            os.fchmod(fd, 0o660)
            fcntl.flock(fd, fcntl.LOCK_EX)
            queue.id = format(os.fstat(fd).st_ino, "x")
            queue.mailf = os.fdopen(
                fd, "r+", encoding=_ENCODING, errors=_ERRORS, newline=""
            )
        except BaseException:
            os.close(fd)
            os.unlink(path)
            raise
        queue.tmpf = path
        self._tmpfiles.append(path)
        return path

    def write_queue_file(self, item: QueueItem) -> None:
        """Create the item's queue file, locked, and write its envelope."""
        fd = open_locked(item.queuefn, os.O_CREAT | os.O_EXCL | os.O_RDWR, 0o660)
        try:
            os.fchmod(fd, 0o660)
            handle = os.fdopen(fd, "w+", encoding=_ENCODING, errors=_ERRORS, newline="")
        except BaseException:
            os.close(fd)
            raise
        item.queuef = handle
        handle.write(f"ID: {item.queueid}\nSender: {item.sender}\nRecipient: {item.addr}\n")
        handle.flush()
        os.fsync(handle.fileno())

    def read_queue_file(self, path: str, queue: Queue) -> QueueItem:
        """Read a queue file and put its item at the head of queue.

        Raises ValueError for a malformed file.
        """
        fields: dict[str, str] = {}
        with open(path, encoding=_ENCODING, errors=_ERRORS, newline="") as handle:
            for raw in handle:
                line = raw.removesuffix("\n")
                key, sep, value = line.partition(":")
                if not sep:
                    raise ValueError(f"malformed queue file `{path}'")
                value = value.lstrip()
                if key in ("ID", "Sender", "Recipient"):
                    fields[key] = value
                else:
                    logger.debug("ignoring unknown queue info `%s' in `%s'", key, path)

        queueid = fields.get("ID")
        sender = fields.get("Sender")
        addr = fields.get("Recipient")
        if not queueid or sender is None or not addr:
            raise ValueError(f"malformed queue file `{path}'")

        scratch = Queue(config=self.config, local_hostname=self.local_hostname)
        item = scratch.add_recipient(addr, Expand.NONE)
        item.sender = sender
        item.queueid = queueid
        item.queuefn = path
        queue.items.insert(0, item)
        return item

    def link_spool(self, queue: Queue) -> None:
        """Write a queue file and link the message file for every recipient."""
        try:
            queue.mailf.flush()
            os.fsync(queue.mailf.fileno())
            logger.info(
                "new mail from uid=%d envelope_from=<%s>", os.getuid(), queue.sender
            )
            for item in queue:
                item.queueid = f"{queue.id}.{id(item):x}"
                item.queuefn = self._path(f"Q{item.queueid}")
                item.mailfn = self._path(f"M{item.queueid}")
                if os.path.exists(item.queuefn) or os.path.exists(item.mailfn):
                    raise FileExistsError(f"spool file for {item.queueid} exists")
                self.write_queue_file(item)
                os.link(queue.tmpf, item.mailfn)
        except BaseException:
            for item in queue:
                _unlink_quietly(item.mailfn)
                _unlink_quietly(item.queuefn)
            raise

        for item in queue:
            logger.info("mail to=<%s> queued as %s", item.addr, item.queueid)
        _unlink_quietly(queue.tmpf)

    def load_queue(self, queue: Queue) -> Queue:
        """Fill queue with every complete item found in the spool directory."""
        queue.items.clear()
        try:
            entries = list(os.scandir(self.directory))
        except OSError as exc:
            raise DmaError(f"reading queue: {exc.strerror}", EX_NOINPUT) from exc

        for entry in entries:
            if not entry.name.startswith("Q"):
                continue
            queuefn = self._path(entry.name)
            mailfn = self._path("M" + entry.name[1:])
            try:
                if not stat.S_ISREG(os.stat(queuefn).st_mode):
                    raise ValueError("not a regular file")
                os.stat(mailfn)
                item = self.read_queue_file(queuefn, queue)
            except (OSError, ValueError) as exc:
                logger.info("could not pick up queue file: `%s'/`%s': %s", queuefn, mailfn, exc)
                continue
            item.mailfn = mailfn
        return queue

    def delete(self, item: QueueItem) -> None:
        """Remove the item's spool files and close its handles."""
        _unlink_quietly(item.mailfn)
        _unlink_quietly(item.queuefn)
        _close_quietly(item.queuef)
        _close_quietly(item.mailf)
        item.queuef = None
        item.mailf = None

    def acquire(self, item: QueueItem) -> bool:
        """Lock the queue file and open the message file.

        Returns False when another process holds the lock.
        """
        try:
            if item.queuef is None:
                fd = open_locked(item.queuefn, os.O_RDWR | os.O_NONBLOCK)
                item.queuef = os.fdopen(
                    fd, "r+", encoding=_ENCODING, errors=_ERRORS, newline=""
                )
            if item.mailf is None:
                item.mailf = open(item.mailfn, encoding=_ENCODING, errors=_ERRORS, newline="")
        except BlockingIOError:
            return False
        except OSError as exc:
            logger.info("could not acquire queue file: %s", exc)
            raise
        return True

    def drop(self, queue: Queue, keep: QueueItem | None) -> None:
        """Close the spool files of every item except keep."""
        for item in queue:
            if item is keep:
                continue
            _close_quietly(item.queuef)
            _close_quietly(item.mailf)
            item.queuef = None
            item.mailf = None

    def flush_since(self, period: int) -> bool:
        """Tell whether the flush file was touched within the last period seconds."""
        try:
            mtime = int(os.stat(self._path(SPOOL_FLUSHFILE)).st_mtime)
        except OSError:
            return False
        return mtime + period >= int(time.time())

    def flush_signal(self) -> None:
        """Touch the flush file so waiting deliveries retry at once."""
        path = self._path(SPOOL_FLUSHFILE)
        try:
            fd = os.open(path, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, 0o660)
        except OSError as exc:
            logger.error("could not open flush file: %s", exc)
            raise
        os.close(fd)

    def remove_temp_files(self) -> None:
        """Remove every temporary message file this spool created."""
        for path in self._tmpfiles:
            _unlink_quietly(path)
        self._tmpfiles.clear()