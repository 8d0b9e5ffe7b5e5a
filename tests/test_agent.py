import fcntl
import io
import os
import time

import pytest

from dmailer.agent import (
    Options,
    bounce,
    deliver,
    format_queue,
    main,
    parse_args,
    run_queue,
    set_from,
)
from dmailer.config import Config
from dmailer.queue import Queue, QueueItem
from dmailer.spool import Spool
from dmailer.util import DmaError

HOST = "mail.example.com"


def make_state(tmp_path, sleep=None, maildir=None):
    spooldir = tmp_path / "spool"
    spooldir.mkdir(exist_ok=True)
    if maildir is None:
        maildir = tmp_path / "mail"
        maildir.mkdir(exist_ok=True)
    config = Config(spooldir=str(spooldir))
    state = Options(
        config=config,
        spool=Spool(config, HOST),
        maildir=str(maildir),
        mbox_helper=str(tmp_path / "missing-helper"),
        local_hostname=HOST,
        daemonize=False,
        user_lookup=lambda name: True,
    )
    if sleep is not None:
        state.sleep = sleep
    return state


# ---- parse_args -------------------------------------------------------


def test_mailq_name_shows_queue():
    assert parse_args([], "/usr/sbin/mailq").showq is True


def test_mailq_rejects_arguments():
    with pytest.raises(DmaError) as info:
        parse_args(["x"], "mailq")
    assert info.value.exit_code == os.EX_USAGE


def test_newaliases_name():
    assert parse_args([], "newaliases").newaliases is True


def test_bp_and_bq():
    assert parse_args(["-bp"]).showq is True
    assert parse_args(["-bq"]).queue_only is True


def test_a_fallthrough():
    assert parse_args(["-Ac"]).daemonize is True
    assert parse_args(["-Ax"]).daemonize is False
    assert parse_args(["-Ap"]).showq is True
    assert parse_args(["-bx"]).daemonize is False


def test_sender_and_flags():
    opts = parse_args(["-f", "alice@example.com", "-t", "-oi", "bob@example.com"])
    assert opts.sender == "alice@example.com"
    assert opts.recp_from_header is True
    assert opts.nodot is True
    assert opts.recipients == ["bob@example.com"]


def test_r_attached_and_grouped_flags():
    opts = parse_args(["-ralice@example.com", "-ti", "bob"])
    assert opts.sender == "alice@example.com"
    assert opts.recp_from_header and opts.nodot
    assert opts.recipients == ["bob"]


def test_q_forms():
    assert parse_args(["-q"]).doqueue is True
    assert parse_args(["-q30m"]).doqueue is True
    opts = parse_args(["-q", "-D"])
    assert opts.doqueue is True
    assert opts.daemonize is False


def test_double_dash_ends_options():
    assert parse_args(["--", "-notanoption"]).recipients == ["-notanoption"]


def test_unknown_and_missing_argument():
    with pytest.raises(DmaError) as info:
        parse_args(["-x"])
    assert info.value.exit_code == os.EX_USAGE
    with pytest.raises(DmaError) as info:
        parse_args(["-f"])
    assert info.value.exit_code == os.EX_USAGE


def test_queue_and_recipients_exclusive():
    with pytest.raises(DmaError, match="mutually exclusive"):
        parse_args(["-bp", "bob"])


def test_conflicting_queue_operations():
    with pytest.raises(DmaError, match="conflicting queue operations"):
        parse_args(["-bp", "-q"])


# ---- set_from ---------------------------------------------------------


def make_queue(config=None):
    return Queue(config=config or Config(), local_hostname=HOST)


def test_set_from_full_address():
    queue = make_queue()
    assert set_from(queue, "alice@example.com", "bob", HOST, queue.config) == "alice@example.com"
    assert queue.sender == "alice@example.com"


def test_set_from_user_only_gets_hostname():
    queue = make_queue()
    assert set_from(queue, "alice", "bob", HOST, queue.config) == f"alice@{HOST}"


def test_set_from_empty_uses_username(monkeypatch):
    monkeypatch.delenv("EMAIL", raising=False)
    queue = make_queue()
    assert set_from(queue, "", "bob", HOST, queue.config) == f"bob@{HOST}"
    assert set_from(queue, "@example.com", "bob", HOST, queue.config) == "bob@example.com"


def test_set_from_environment(monkeypatch):
    monkeypatch.setenv("EMAIL", "carol@example.com")
    queue = make_queue()
    assert set_from(queue, None, "bob", HOST, queue.config) == "carol@example.com"


def test_set_from_masquerade():
    config = Config(masquerade_host="example.com", masquerade_user="postmaster")
    queue = make_queue(config)
    assert set_from(queue, "alice@other.example.com", "bob", HOST, config) == "postmaster@example.com"


def test_set_from_rejects_newline():
    queue = make_queue()
    with pytest.raises(DmaError):
        set_from(queue, "a\nb@example.com", "bob", HOST, queue.config)


# ---- format_queue -----------------------------------------------------


def test_format_empty_queue():
    assert format_queue(make_queue()) == "Mail queue is empty\n"


def test_format_queue_entries():
    queue = make_queue()
    queue.items.append(QueueItem(addr="b@example.com", sender="a@example.com", queueid="1a.1"))
    queue.items.append(QueueItem(addr="c@example.com", sender="a@example.com", queueid="1a.2"))
    text = format_queue(queue)
    assert text == (
        "ID\t: 1a.1\nFrom\t: a@example.com\nTo\t: b@example.com\n"
        "--\n"
        "ID\t: 1a.2\nFrom\t: a@example.com\nTo\t: c@example.com\n"
    )


# ---- deliver / bounce / run_queue --------------------------------------


def test_deliver_local_success(tmp_path):
    state = make_state(tmp_path)
    mbox = tmp_path / "mail" / "alice"
    mbox.write_text("")
    item = QueueItem(addr="alice", sender="bob@example.com", mailf=io.StringIO("Subject: hi\n\nFrom here\n"))
    deliver(item, state)
    content = mbox.read_text()
    assert content.startswith("From bob@example.com ")
    assert ">From here\n" in content
    assert item.mailf is None


def test_deliver_retries_after_flush(tmp_path):
    mbox = tmp_path / "mail" / "alice"
    calls = []

    def fake_sleep(seconds):
        calls.append(seconds)
        mbox.write_text("")

    state = make_state(tmp_path, sleep=fake_sleep)
    state.spool.flush_signal()
    queuefn = tmp_path / "spool" / "Qtest"
    queuefn.write_text("ID: x\n")
    item = QueueItem(
        addr="alice",
        sender="bob@example.com",
        queuefn=str(queuefn),
        mailf=io.StringIO("Subject: hi\n\nbody\n"),
    )
    deliver(item, state)
    assert len(calls) == 1
    assert "body\n" in mbox.read_text()
    assert not queuefn.exists()


def test_deliver_gives_up_and_cannot_bounce_bounce(tmp_path):
    calls = []
    state = make_state(tmp_path, sleep=calls.append, maildir=tmp_path / "nowhere")
    queuefn = tmp_path / "spool" / "Qold"
    queuefn.write_text("ID: x\n")
    old = time.time() - 6 * 24 * 60 * 60
    os.utime(queuefn, (old, old))
    item = QueueItem(addr="alice", sender="", queuefn=str(queuefn), mailf=io.StringIO("x\n"))
    with pytest.raises(DmaError) as info:
        deliver(item, state)
    assert info.value.exit_code == os.EX_SOFTWARE
    assert calls == []


def test_deliver_lost_queue_file(tmp_path):
    state = make_state(tmp_path, maildir=tmp_path / "nowhere")
    item = QueueItem(
        addr="alice",
        sender="bob@example.com",
        queuefn=str(tmp_path / "spool" / "Qgone"),
        mailf=io.StringIO("x\n"),
    )
    with pytest.raises(DmaError, match="lost queue file"):
        deliver(item, state)


def test_bounce_delivers_report_to_local_sender(tmp_path):
    state = make_state(tmp_path)
    mbox = tmp_path / "mail" / "bob"
    mbox.write_text("")
    spooldir = tmp_path / "spool"
    queuefn = spooldir / "Qorig"
    mailfn = spooldir / "Morig"
    queuefn.write_text("ID: orig\n")
    mailfn.write_text("Subject: hi\n\nbody\n")
    item = QueueItem(
        addr="alice@example.com",
        sender="bob",
        remote=True,
        queuefn=str(queuefn),
        mailfn=str(mailfn),
        mailf=io.StringIO("Subject: hi\n\nbody\n"),
    )
    bounce(item, "mailbox unavailable", state)
    content = mbox.read_text()
    assert content.startswith("From MAILER-DAEMON ")
    assert "Subject: Mail delivery failed\n" in content
    assert "X-Original-To: <alice@example.com>\n" in content
    assert "mailbox unavailable\n" in content
    assert "Subject: hi\n" in content
    assert os.listdir(spooldir) == []


def test_bounce_of_bounce_refused(tmp_path):
    state = make_state(tmp_path)
    item = QueueItem(addr="alice@example.com", sender="", mailf=io.StringIO("x\n"))
    with pytest.raises(DmaError, match="can not bounce a bounce"):
        bounce(item, "reason", state)


def _locked_item(tmp_path):
    spooldir = tmp_path / "spool"
    queuefn = spooldir / "Qlocked"
    mailfn = spooldir / "Mlocked"
    queuefn.write_text("ID: locked\n")
    mailfn.write_text("body\n")
    return QueueItem(addr="alice", sender="bob@example.com", queuefn=str(queuefn), mailfn=str(mailfn))


def test_run_queue_locked_item_skipped_when_flushing(tmp_path):
    state = make_state(tmp_path)
    state.doqueue = True
    item = _locked_item(tmp_path)
    queue = make_queue()
    queue.items.append(item)
    with open(item.queuefn) as holder:
        fcntl.flock(holder.fileno(), fcntl.LOCK_EX)
        run_queue(queue, state)
    assert item.mailf is None
    assert os.path.exists(item.queuefn)


def test_run_queue_locked_item_is_error(tmp_path):
    state = make_state(tmp_path)
    item = _locked_item(tmp_path)
    queue = make_queue()
    queue.items.append(item)
    with open(item.queuefn) as holder:
        fcntl.flock(holder.fileno(), fcntl.LOCK_EX)
        with pytest.raises(DmaError) as info:
            run_queue(queue, state)
    assert info.value.exit_code == os.EX_SOFTWARE


# ---- main -------------------------------------------------------------


def test_main_invalid_option(capsys):
    assert main(["-x"]) == os.EX_USAGE
    assert "invalid argument: `-x'" in capsys.readouterr().err