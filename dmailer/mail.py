"""Reading submitted mail into the spool and composing bounce messages."""

from __future__ import annotations

import enum
import random
import sys
import time
from typing import IO

from .config import Features
from .queue import Expand, Queue, QueueItem
from .util import (
    EX_DATAERR,
    DmaError,
    current_username,
    rfc822date,
    starts_with_ci,
    systemhostname,
)

VERSION = "dmailer mail agent"
MAX_ADDRESS_LENGTH = 1000
_MAX_INPUT_LINE = 998


class _State(enum.Enum):
    NONE = 0
    START = 1
    MAIN = 2
    EOL = 3
    QUIT = 4


class AddressParser:
    """Simplified RFC 2822 address list parser for To:, Cc: and Bcc: headers.

    Quoted strings and escapes are kept as they are, since they are passed
    to the mail server that way.
    """

    def __init__(self) -> None:
        self._state = _State.NONE
        self._reset()

    def _reset(self) -> None:
        self._addr: list[str] = []
        self._comment = 0
        self._quote = False
        self._brackets = False
        self._esc = False

    def active(self) -> bool:
        """Tell whether a header has been started."""
        return self._state is not _State.NONE

    def start(self, line: str) -> list[str]:
        """Begin a new address header and return the addresses it completes."""
        self._state = _State.START
        return self.feed(line)

    def feed(self, line: str) -> list[str]:
        """Parse one more header line and return the addresses it completes.

        Raises DmaError for a malformed address.
        """
        found: list[str] = []
        pos = 0
        while True:
            state = self._state
            if state is _State.NONE:
                raise DmaError("invalid address in header", EX_DATAERR)
            if state is _State.QUIT:
                return found
            if state is _State.START:
                self._reset()
                colon = line.find(":")
                if colon < 0:
                    raise self._fail()
                pos = colon + 1
                self._state = _State.MAIN
            elif state is _State.EOL:
                if line[pos : pos + 1] in (" ", "\t"):
                    self._state = _State.MAIN
                else:
                    self._state = _State.QUIT
                    if self._addr:
                        found.append(self._take())
                    return found

            next_pos = self._scan(line, pos)
            if next_pos is None:
                self._state = _State.EOL
                return found
            found.append(self._take())
            pos = next_pos

    def _fail(self) -> DmaError:
        self._state = _State.QUIT
        return DmaError("invalid address in header", EX_DATAERR)

    def _take(self) -> str:
        addr = "".join(self._addr)
        self._addr = []
        return addr

    def _copy(self, char: str) -> None:
        if self._comment:
            return
        if len(self._addr) + 1 == MAX_ADDRESS_LENGTH:
            raise self._fail()
        self._addr.append(char)

    def _scan(self, line: str, pos: int) -> int | None:
        """Scan from pos; return where to go on after an address, None at end of line."""
        while pos < len(line):
            char = line[pos]
            pos += 1
            if self._esc:
                self._esc = False
                if char in "\r\n":
                    raise self._fail()
                self._copy(char)
                continue
            if self._quote:
                if char == '"':
                    self._quote = False
                elif char == "\\":
                    self._esc = True
                elif char in "\r\n":
                    return None
                self._copy(char)
                continue

            if char == "(":
                self._comment += 1
                continue
            if char == ")":
                if not self._comment:
                    raise self._fail()
                self._comment -= 1
                continue
            if char == '"':
                self._quote = True
                self._copy(char)
                continue
            if char == "\\":
                self._esc = True
                self._copy(char)
                continue
            if char in "\r\n":
                return None
            if self._comment or char in " \t":
                continue
            if char == "<":
                self._brackets = True
                self._addr = []
                continue
            if char == ">":
                if not self._brackets:
                    raise self._fail()
                self._brackets = False
                return pos
            if char == ":":
                self._addr = []
                continue
            if char in ",;":
                if not self._addr:
                    continue
                return pos
            self._copy(char)
        return None


def _add_all(queue: Queue, addresses: list[str]) -> None:
    for addr in addresses:
        queue.add_recipient(addr, Expand.WILDCARD)


def readmail(
    queue: Queue,
    infile: IO[str] | None = None,
    nodot: bool = False,
    recp_from_header: bool = False,
    username: str | None = None,
    uid: int | None = None,
    local_hostname: str | None = None,
    system_hostname: str | None = None,
) -> None:
    """Copy a submitted message from infile into the queue's message file.

    Adds a Received: header, supplies missing Date:, Message-Id: and From:
    headers, drops Bcc: headers and, with recp_from_header, takes the
    recipients from To:, Cc: and Bcc:.  Raises DmaError on bad input.
    """
    infile = sys.stdin if infile is None else infile
    if username is None or uid is None:
        own_name, own_uid = current_username()
        username = own_name if username is None else username
        uid = own_uid if uid is None else uid
    local_hostname = local_hostname or queue.local_hostname
    system_hostname = system_hostname or systemhostname()
    out = queue.mailf

    out.write(
        f"Received: from {username} (uid {uid})\n"
        f"\t(envelope-from {queue.sender})\n"
        f"\tid {queue.id}\n"
        f"\tby {local_hostname} ({VERSION} on {system_hostname});\n"
        f"\t{rfc822date()}\n"
    )

    parser = AddressParser()
    had_headers = had_from = had_messageid = had_date = False
    had_first_line = had_last_line = nocopy = False

    for line in iter(lambda: infile.readline(_MAX_INPUT_LINE), ""):
        if had_last_line:
            raise DmaError(
                f"bad mail input format: from {username} (uid {uid}) "
                f"(envelope-from {queue.sender})",
                EX_DATAERR,
            )
        linelen = len(line)
        if not line.endswith("\n"):
            line += "\n"
            had_last_line = True

        if not had_first_line:
            if starts_with_ci(line, "From ") or starts_with_ci(line, ">From "):
                continue
            had_first_line = True

        if not had_headers:
            if line[0] not in " \t":
                nocopy = False
            if starts_with_ci(line, "Date:"):
                had_date = True
            elif starts_with_ci(line, "Message-Id:"):
                had_messageid = True
            elif starts_with_ci(line, "From:"):
                had_from = True
            elif starts_with_ci(line, "Bcc:"):
                nocopy = True

            if parser.active():
                _add_all(queue, parser.feed(line))
            if recp_from_header and any(
                starts_with_ci(line, prefix) for prefix in ("To:", "Cc:", "Bcc:")
            ):
                _add_all(queue, parser.start(line))

        if line == "\n" and not had_headers:
            had_headers = True
            if not had_date:
                out.write(f"Date: {rfc822date()}\n")
            if not had_messageid:
                out.write(
                    f"Message-Id: <{int(time.time()):x}.{queue.id}."
                    f"{random.getrandbits(31):x}@{local_hostname}>\n"
                )
            if not had_from:
                out.write(f"From: <{queue.sender}>\n")

        if not nodot and linelen == 2 and line[0] == ".":
            break
        if not nocopy:
            out.write(line)


def write_bounce(
    item: QueueItem,
    bounce_queue: Queue,
    reason: str,
    full: bool | None = None,
    local_hostname: str | None = None,
    system_hostname: str | None = None,
) -> None:
    """Write the bounce message for item into the bounce queue's message file.

    With full the whole original message follows, otherwise its headers.
    When full is None the configuration's FULLBOUNCE switch decides.
    """
    if full is None:
        full = Features.FULLBOUNCE in bounce_queue.config.features
    local_hostname = local_hostname or bounce_queue.local_hostname
    system_hostname = system_hostname or systemhostname()
    out = bounce_queue.mailf
    trailer = "Original message follows." if full else "Message headers follow."

    out.write(
        "Received: from MAILER-DAEMON\n"
        f"\tid {bounce_queue.id}\n"
        f"\tby {local_hostname} ({VERSION} on {system_hostname});\n"
        f"\t{rfc822date()}\n"
        f"X-Original-To: <{item.addr}>\n"
        "From: MAILER-DAEMON <>\n"
        f"To: {item.sender}\n"
        "Subject: Mail delivery failed\n"
        f"Message-Id: <{bounce_queue.id}@{local_hostname}>\n"
        f"Date: {rfc822date()}\n"
        "\n"
        f"This is the {VERSION} at {local_hostname}.\n"
        "\n"
        f"There was an error delivering your mail to <{item.addr}>.\n"
        "\n"
        f"{reason}\n"
        "\n"
        f"{trailer}\n"
        "\n"
    )

    item.mailf.seek(0)
    if full:
        out.write(item.mailf.read())
        return
    for line in item.mailf:
        if line.startswith("\n"):
            break
        out.write(line)