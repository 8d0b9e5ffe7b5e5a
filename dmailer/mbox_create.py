"""Create a user's mbox in the mail directory with the permissions delivery needs."""

from __future__ import annotations

import grp
import logging
import os
import pwd
import sys

from .util import (
    DMA_GROUP,
    EX_CONFIG,
    EX_DATAERR,
    EX_NOINPUT,
    EX_NOPERM,
    EX_NOUSER,
    EX_OSERR,
    EX_USAGE,
    DmaError,
)

logger = logging.getLogger("dmailer")

MAILDIR = "/var/mail"
MBOX_MODE = 0o620


def _group_id(group: str) -> int:
    try:
        return grp.getgrnam(group).gr_gid
    except KeyError as exc:
        raise DmaError(f"cannot find dma group `{group}'", EX_CONFIG) from exc


def create_user_mbox(user: str, maildir: str = MAILDIR, group: str = DMA_GROUP) -> str:
    """Create or fix the mbox of user, owned by user and group, mode 0620.

    Returns the mbox path; raises DmaError with the matching exit code.
    """
    gid = _group_id(group)
    if "/" in user:
        raise DmaError(f"path separator in username `{user}'", EX_DATAERR)
    try:
        uid = pwd.getpwnam(user).pw_uid
    except KeyError as exc:
        raise DmaError(f"cannot find user `{user}'", EX_NOUSER) from exc

    try:
        dirfd = os.open(maildir, os.O_RDONLY)
    except OSError as exc:
        raise DmaError(f"cannot open maildir {maildir}: {exc.strerror}", EX_NOINPUT) from exc
    try:
        try:
            fd = os.open(
                user, os.O_RDONLY | os.O_CREAT | os.O_NOFOLLOW, 0o600, dir_fd=dirfd
            )
        except OSError as exc:
            raise DmaError(f"cannot open mbox `{user}': {exc.strerror}", EX_NOINPUT) from exc
    finally:
        os.close(dirfd)

    try:
        try:
            os.fchown(fd, uid, gid)
        except OSError as exc:
            raise DmaError(
                f"cannot change owner of mbox `{user}': {exc.strerror}", EX_OSERR
            ) from exc
        try:
            os.fchmod(fd, MBOX_MODE)
        except OSError as exc:
            raise DmaError(
                f"cannot change permissions of mbox `{user}': {exc.strerror}", EX_OSERR
            ) from exc
    finally:
        os.close(fd)
    return os.path.join(maildir, user)


def main(argv=None) -> int:
    """Take the mail group, then create the mbox of the one user named."""
    args = sys.argv[1:] if argv is None else list(argv)
    try:
        gid = _group_id(DMA_GROUP)
        try:
            os.setgid(gid)
        except OSError as exc:
            raise DmaError(f"cannot set gid to {gid} ({DMA_GROUP})", EX_NOPERM) from exc
        if os.getegid() != gid:
            raise DmaError(
                f"cannot set gid to {gid} ({DMA_GROUP}), still at {os.getegid()}", EX_NOPERM
            )
        if len(args) != 1:
            raise DmaError("no arguments", EX_USAGE)
        user = args[0]
        logger.info("creating mbox for `%s'", user)
        create_user_mbox(user, MAILDIR, DMA_GROUP)
    except DmaError as exc:
        logger.error("%s", exc.message or "unknown error")
        return exc.exit_code
    logger.info("successfully created mbox for `%s'", user)
    return 0


if __name__ == "__main__":
    sys.exit(main())