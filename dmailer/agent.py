"""Command line front end: option parsing, sender setup and queue running."""

from __future__ import annotations

import logging
import os
import pwd
import random
import signal
import sys
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field

from .config import DEFAULT_CONF_PATH, Config, Features, parse_authfile, parse_conf
from .local import DEFAULT_MBOX_HELPER, MAILDIR, deliver_local
from .mail import readmail, write_bounce
from .net import deliver_remote
from .queue import Expand, Queue, QueueItem
from .spool import Spool
from .util import (
    DeliveryDeferred,
    DeliveryFailed,
    DmaError,
    current_username,
    hostname,
    log_ident,
)

logger = logging.getLogger("dmailer")

MIN_RETRY = 300
MAX_RETRY = 3 * 60 * 60
MAX_TIMEOUT = 5 * 24 * 60 * 60
SLEEP_TIMEOUT = 30
DMA_ROOT_USER = "mail"

_WITH_ARG = frozenset("AbBCdfFhLNoOqrRVX")
_NO_ARG = frozenset("DintUv")


@dataclass
class Options:
    """Command line switches and the runtime settings of one agent run."""

    recipients: list[str] = field(default_factory=list)
    sender: str | None = None
    nodot: bool = False
    showq: bool = False
    queue_only: bool = False
    newaliases: bool = False
    recp_from_header: bool = False
    doqueue: bool = False
    daemonize: bool = True
    logident_base: str = "dma"
    config: Config = field(default_factory=Config)
    spool: Spool | None = None
    aliases: Mapping[str, Sequence[str]] = field(default_factory=dict)
    maildir: str = MAILDIR
    mbox_helper: str = DEFAULT_MBOX_HELPER
    local_hostname: str | None = None
    user_lookup: Callable[[str], bool] | None = None
    sleep: Callable[[float], object] = time.sleep


def _invalid(opt: str) -> DmaError:
    return DmaError(f"invalid argument: `-{opt}'", os.EX_USAGE)


def _apply_option(opts: Options, opt: str, value: str | None) -> None:
    if opt in "Ab":
        first = value[:1] if value else ""
        if opt == "A" and first in ("c", "m") and first:
            return
        if first == "p":
            opts.showq = True
        elif first == "q":
            opts.queue_only = True
        else:
            opts.daemonize = False
    elif opt == "D":
        opts.daemonize = False
    elif opt == "L":
        opts.logident_base = value
    elif opt in "fr":
        opts.sender = value
    elif opt == "t":
        opts.recp_from_header = True
    elif opt == "o":
        if value and value.startswith("i"):
            opts.nodot = True
    elif opt == "i":
        opts.nodot = True
    elif opt == "q":
        opts.doqueue = True


def parse_args(argv, prog="dma") -> Options:
    """Parse sendmail-style arguments; raise DmaError with EX_USAGE on misuse."""
    opts = Options()
    args = list(argv)
    name = os.path.basename(prog)

    if name == "mailq":
        if args:
            raise DmaError("invalid arguments", os.EX_USAGE)
        opts.showq = True
        return opts
    if name == "newaliases":
        opts.newaliases = True
        return opts

    index = 0
    while index < len(args):
        arg = args[index]
        if arg == "--":
            index += 1
            break
        if not arg.startswith("-") or arg == "-":
            break
        index += 1
        pos = 1
        while pos < len(arg):
            opt = arg[pos]
            pos += 1
            if opt in _NO_ARG:
                _apply_option(opts, opt, None)
                continue
            if opt not in _WITH_ARG:
                raise _invalid(opt)
            if pos < len(arg):
                value = arg[pos:]
            elif index < len(args):
                value = args[index]
                index += 1
                if opt == "q" and value.startswith("-"):
                    index -= 1
            elif opt == "q":
                value = None
            else:
                raise _invalid(opt)
            _apply_option(opts, opt, value)
            break

    opts.recipients = args[index:]

    if opts.recipients and (opts.showq or opts.doqueue):
        raise DmaError(
            "sending mail and queue operations are mutually exclusive", os.EX_USAGE
        )
    if opts.showq and opts.doqueue:
        raise DmaError("conflicting queue operations", os.EX_USAGE)
    return opts


def set_from(queue: Queue, sender, username, local_hostname=None, config=None) -> str:
    """Work out the envelope sender, store it on queue and return it."""
    config = queue.config if config is None else config
    local_hostname = local_hostname or queue.local_hostname
    addr = sender if sender is not None else os.environ.get("EMAIL")

    from_user = ""
    from_host = ""
    if addr is not None:
        from_user, _, from_host = addr.partition("@")

    if not from_user:
        from_user = username
    if not from_host:
        from_host = local_hostname
    if config.masquerade_user:
        from_user = config.masquerade_user
    if config.masquerade_host:
        from_host = config.masquerade_host

    result = f"{from_user}@{from_host}"
    if "\n" in result:
        raise DmaError(f"invalid sender address `{result}'", os.EX_SOFTWARE)
    queue.sender = result
    return result


def format_queue(queue: Queue) -> str:
    """Render the queue listing shown by ``mailq``."""
    if queue.is_empty():
        return "Mail queue is empty\n"
    entries = [
        f"ID\t: {item.queueid}\nFrom\t: {item.sender}\nTo\t: {item.addr}\n"
        for item in queue
    ]
    return "--\n".join(entries)


def _local_hostname(state: Options) -> str:
    if state.local_hostname is None:
        state.local_hostname = hostname(state.config)
    return state.local_hostname


def _spool(state: Options) -> Spool:
    if state.spool is None:
        state.spool = Spool(state.config, _local_hostname(state))
    return state.spool


def _new_queue(state: Options, sender: str | None) -> Queue:
    return Queue(
        sender,
        config=state.config,
        aliases=state.aliases,
        local_hostname=_local_hostname(state),
        user_lookup=state.user_lookup,
    )


def deliver(item: QueueItem, agent_state: Options) -> None:
    """Deliver item, retrying with backoff, and bounce it when that fails."""
    state = agent_state
    spool = _spool(state)
    backoff = MIN_RETRY

    while True:
        logger.info("<%s> trying delivery", item.addr)
        try:
            if item.remote:
                deliver_remote(item, state.config, _local_hostname(state))
            else:
                deliver_local(item, state.maildir, state.mbox_helper)
        except DeliveryFailed as exc:
            bounce(item, str(exc) or "unknown bounce reason", state)
            return
        except DeliveryDeferred:
            pass
        else:
            logger.info("<%s> delivery successful", item.addr)
            spool.delete(item)
            return

        try:
            if item.queuefn is None:
                raise FileNotFoundError(item.queuefn)
            mtime = os.stat(item.queuefn).st_mtime
        except OSError as exc:
            logger.error("lost queue file `%s'", item.queuefn)
            raise DmaError(f"lost queue file `{item.queuefn}'", os.EX_SOFTWARE) from exc

        if int(time.time()) - int(mtime) > MAX_TIMEOUT:
            bounce(
                item,
                f"Could not deliver for the last {MAX_TIMEOUT} seconds. Giving up.",
                state,
            )
            return

        slept = 0
        flushed = False
        while slept < backoff:
            state.sleep(SLEEP_TIMEOUT)
            slept += SLEEP_TIMEOUT
            if spool.flush_since(slept):
                flushed = True
                break
        if flushed:
            backoff = MIN_RETRY
        else:
            backoff = min(backoff + backoff // 2 + random.randrange(backoff), MAX_RETRY)


def bounce(item: QueueItem, reason: str, agent_state: Options) -> None:
    """Send a delivery failure report for item back to its sender."""
    state = agent_state
    spool = _spool(state)
    if not item.sender:
        logger.info("can not bounce a bounce message, discarding")
        raise DmaError("can not bounce a bounce message, discarding", os.EX_SOFTWARE)

    bounce_queue = _new_queue(state, "")
    try:
        bounce_queue.add_recipient(item.sender, Expand.WILDCARD)
        spool.new_spool_file(bounce_queue)
        logger.error("delivery failed, bouncing as %s", bounce_queue.id)
        write_bounce(
            item, bounce_queue, reason, local_hostname=_local_hostname(state)
        )
        spool.link_spool(bounce_queue)
    except (OSError, ValueError, DmaError) as exc:
        logger.critical("error creating bounce: %s", exc)
        spool.delete(item)
        raise DmaError(f"error creating bounce: {exc}", os.EX_IOERR) from exc

    spool.delete(item)
    run_queue(bounce_queue, state)


def _daemonize() -> None:
    if os.fork() > 0:
        os._exit(os.EX_OK)
    os.setsid()
    if os.fork() > 0:
        os._exit(os.EX_OK)
    os.chdir("/")
    devnull = os.open(os.devnull, os.O_RDWR)
    for fd in (0, 1, 2):
        os.dup2(devnull, fd)
    if devnull > 2:
        os.close(devnull)


def _acquire_and_deliver(queue: Queue, item: QueueItem, state: Options) -> None:
    spool = _spool(state)
    try:
        acquired = spool.acquire(item)
    except OSError as exc:
        raise DmaError(f"could not acquire queue file: {exc}", os.EX_SOFTWARE) from exc
    if not acquired:
        if state.doqueue:
            return
        logger.warning("could not lock queue file")
        raise DmaError("could not lock queue file", os.EX_SOFTWARE)
    spool.drop(queue, item)
    deliver(item, state)


def _child(queue: Queue, item: QueueItem, state: Options) -> int:
    try:
        _acquire_and_deliver(queue, item, state)
    except DmaError as exc:
        logger.error("%s", exc)
        return exc.exit_code
    except Exception:
        logger.exception("delivery of %s failed", item.queueid)
        return os.EX_SOFTWARE
    return os.EX_OK


def run_queue(queue: Queue, agent_state: Options) -> None:
    """Deliver every item of queue, one process per item."""
    state = agent_state
    if queue.is_empty():
        return
    if state.daemonize:
        try:
            _daemonize()
        except OSError as exc:
            raise DmaError(f"can not daemonize: {exc}", os.EX_OSERR) from exc
        state.daemonize = False

    items = list(queue)
    for item in items[:-1]:
        try:
            pid = os.fork()
        except OSError as exc:
            raise DmaError(f"can not fork: {exc}", os.EX_OSERR) from exc
        if pid == 0:
            os._exit(_child(queue, item, state))
    _acquire_and_deliver(queue, items[-1], state)


def _drop_root() -> None:
    if os.geteuid() != 0 and os.getuid() != 0:
        return
    try:
        entry = pwd.getpwnam(DMA_ROOT_USER)
    except KeyError as exc:
        raise DmaError(f"user '{DMA_ROOT_USER}' not found", os.EX_CONFIG) from exc
    try:
        os.setuid(entry.pw_uid)
    except OSError as exc:
        raise DmaError("cannot drop root privileges", os.EX_OSERR) from exc
    if os.geteuid() == 0 or os.getuid() == 0:
        raise DmaError("cannot drop root privileges", os.EX_OSERR)


def _run(options: Options) -> int:
    log_ident(options.logident_base, None)
    try:
        signal.signal(signal.SIGHUP, lambda signo, frame: None)
    except (OSError, ValueError) as exc:
        logger.warning("can not set signal handler: %s", exc)

    username, uid = current_username()
    config = parse_conf(DEFAULT_CONF_PATH, options.config)
    if config.authpath is not None:
        config.authusers = parse_authfile(config.authpath)
    spool = _spool(options)

    if options.showq:
        queue = spool.load_queue(Queue(config=config, local_hostname=_local_hostname(options)))
        print(format_queue(queue), end="")
        return os.EX_OK

    if options.doqueue:
        try:
            spool.flush_signal()
        except OSError:
            pass
        queue = spool.load_queue(Queue(config=config, local_hostname=_local_hostname(options)))
        run_queue(queue, options)
        return os.EX_OK

    if options.newaliases:
        return os.EX_OK

    queue = _new_queue(options, None)
    set_from(queue, options.sender, username, _local_hostname(options), config)

    try:
        spool.new_spool_file(queue)
    except OSError as exc:
        raise DmaError(
            f"can not create temp file in `{config.spooldir}'", os.EX_CANTCREAT
        ) from exc
    log_ident(options.logident_base, queue.id)

    for recipient in options.recipients:
        try:
            queue.add_recipient(recipient, Expand.WILDCARD)
        except DmaError as exc:
            raise DmaError(f"invalid recipient `{recipient}'", os.EX_DATAERR) from exc

    if queue.is_empty() and not options.recp_from_header:
        raise DmaError("no recipients from command line", os.EX_NOINPUT)

    try:
        readmail(
            queue,
            sys.stdin,
            options.nodot,
            options.recp_from_header,
            username,
            uid,
            _local_hostname(options),
        )
    except OSError as exc:
        raise DmaError(f"can not read mail: {exc}", os.EX_NOINPUT) from exc

    if queue.is_empty():
        raise DmaError("no recipients from headers", os.EX_NOINPUT)

    try:
        spool.link_spool(queue)
    except OSError as exc:
        raise DmaError(f"can not create spools: {exc}", os.EX_CANTCREAT) from exc

    if Features.DEFER in config.features or options.queue_only:
        return os.EX_OK

    run_queue(queue, options)
    return os.EX_OK


def main(argv=None) -> int:
    """Run the mail agent and return its exit status."""
    if argv is None:
        prog = sys.argv[0] or "dma"
        args = sys.argv[1:]
    else:
        prog = "dma"
        args = list(argv)
    name = os.path.basename(prog)

    options: Options | None = None
    try:
        options = parse_args(args, prog)
        _drop_root()
        return _run(options)
    except DmaError as exc:
        print(f"{name}: {exc.message or 'Unknown error'}", file=sys.stderr)
        return exc.exit_code
    finally:
        if options is not None and options.spool is not None:
            options.spool.remove_temp_files()


if __name__ == "__main__":
    sys.exit(main())