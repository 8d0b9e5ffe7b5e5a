import base64
import io
import socket
import threading

import pytest

from dmailer.config import Config, Features
from dmailer.crypto import cram_md5_response
from dmailer.dns import MXHost
from dmailer.net import (
    SmtpClient,
    SmtpError,
    SmtpFeatures,
    deliver_remote,
    deliver_to_host,
    parse_ehlo_response,
)
from dmailer.queue import QueueItem
from dmailer.util import DeliveryDeferred, DeliveryFailed

EHLO_REPLY = b"250-mx.example.com\r\n250-STARTTLS\r\n250 AUTH LOGIN CRAM-MD5\r\n"
BODY = "Subject: hi\n\n.hidden\nbody\n"


class FakeSocket:
    def __init__(self, chunks):
        self.chunks = list(chunks)
        self.sent = bytearray()
        self.closed = False

    def recv(self, size):
        return self.chunks.pop(0) if self.chunks else b""

    def sendall(self, data):
        self.sent += data

    def close(self):
        self.closed = True


_DEFAULT_REPLIES = {
    "EHLO": b"250-mx.example.com\r\n250 HELP\r\n",
    "DATA": b"354 go ahead\r\n",
    "QUIT": b"221 bye\r\n",
}


def _serve(listener, received, replies):
    try:
        conn, _ = listener.accept()
    except OSError:
        return
    with conn:
        conn.settimeout(5)
        try:
            conn.sendall(replies.get("greeting", b"220 mx.example.com ESMTP\r\n"))
            reader = conn.makefile("rb")
            in_data = False
            for raw in reader:
                line = raw.decode().rstrip("\r\n")
                received.append(line)
                if in_data:
                    if line == ".":
                        in_data = False
                        conn.sendall(replies.get(".", b"250 queued\r\n"))
                    continue
                verb = line.split(":")[0].split(" ")[0].upper()
                reply = replies.get(verb, _DEFAULT_REPLIES.get(verb, b"250 OK\r\n"))
                conn.sendall(reply)
                if reply.startswith(b"354"):
                    in_data = True
                if verb == "QUIT":
                    break
        except OSError:
            pass


@pytest.fixture
def smtp_server():
    servers = []

    def start(replies=None):
        listener = socket.create_server(("127.0.0.1", 0))
        listener.settimeout(5)
        received = []
        thread = threading.Thread(
            target=_serve, args=(listener, received, dict(replies or {})), daemon=True
        )
        thread.start()
        servers.append((listener, thread))
        return listener.getsockname()[1], received

    yield start
    for listener, thread in servers:
        thread.join(5)
        listener.close()


def _mx(port):
    return MXHost(
        host="mx.example.com",
        addr="127.0.0.1",
        pref=0,
        family=socket.AF_INET,
        socktype=socket.SOCK_STREAM,
        proto=socket.IPPROTO_TCP,
        sockaddr=("127.0.0.1", port),
    )


def _item(addr="rcpt@example.com", body=BODY):
    return QueueItem(addr=addr, sender="sender@example.com", mailf=io.StringIO(body))


def test_parse_ehlo_response_features():
    features = parse_ehlo_response(EHLO_REPLY.decode())
    assert features == SmtpFeatures(starttls=True, cram_md5=True, login=True)


def test_parse_ehlo_response_plain():
    features = parse_ehlo_response("250-mx.example.com\r\n250 HELP\r\n")
    assert features == SmtpFeatures()


def test_parse_ehlo_response_unterminated():
    with pytest.raises(SmtpError):
        parse_ehlo_response("250-mx.example.com\r\n250 HELP")


def test_parse_ehlo_response_bad_code():
    with pytest.raises(SmtpError):
        parse_ehlo_response("220 mx.example.com\r\n")


def test_read_reply_multiline_across_chunks():
    client = SmtpClient(FakeSocket([b"250-first\r\n250-sec", b"ond\r\n250 last\r\n"]))
    code, text = client.read_reply()
    assert code == 250
    assert text == "250-first\r\n250-second\r\n250 last\r\n"
    assert client.last_reply == "250-first\r\n250-second\r\n250 last"


def test_read_reply_keeps_following_reply():
    client = SmtpClient(FakeSocket([b"220 hello\r\n354 go\r\n"]))
    assert client.read_reply()[0] == 220
    assert client.read_reply()[0] == 354


def test_read_reply_invalid_syntax():
    client = SmtpClient(FakeSocket([b"250x\r\n"]))
    with pytest.raises(SmtpError):
        client.read_reply()


def test_read_reply_connection_closed():
    client = SmtpClient(FakeSocket([b"250-partial\r\n"]))
    with pytest.raises(SmtpError):
        client.read_reply()


def test_send_command_appends_crlf():
    sock = FakeSocket([])
    client = SmtpClient(sock)
    sent = client.send_command("NOOP")
    assert bytes(sock.sent) == b"NOOP\r\n"
    assert sent == len(b"NOOP\r\n")


def test_send_command_oversized():
    client = SmtpClient(FakeSocket([]))
    with pytest.raises(SmtpError):
        client.send_command("x" * 5000)


def test_server_greeting():
    sock = FakeSocket([EHLO_REPLY])
    client = SmtpClient(sock)
    features = client.server_greeting("client.example.com")
    assert bytes(sock.sent) == b"EHLO client.example.com\r\n"
    assert features.starttls and features.login and features.cram_md5


def test_server_greeting_rejected():
    client = SmtpClient(FakeSocket([b"550 go away\r\n"]))
    with pytest.raises(SmtpError):
        client.server_greeting("client.example.com")


def test_auth_cram_md5_success():
    challenge = base64.b64encode(b"<1.2@example.com>").decode()
    sock = FakeSocket([f"334 {challenge}\r\n".encode(), b"235 ok\r\n"])
    client = SmtpClient(sock)
    password = "password"
    assert client.auth_cram_md5("user", password) is True
    lines = bytes(sock.sent).decode().split("\r\n")
    assert lines[0] == "AUTH CRAM-MD5"
    assert lines[1] == cram_md5_response("user", password, challenge)


def test_auth_cram_md5_not_available():
    sock = FakeSocket([b"502 unsupported\r\n"])
    client = SmtpClient(sock)
    password = "password"
    assert client.auth_cram_md5("user", password) is False


def test_auth_cram_md5_rejected():
    challenge = base64.b64encode(b"<1.2@example.com>").decode()
    client = SmtpClient(FakeSocket([f"334 {challenge}\r\n".encode(), b"535 bad\r\n"]))
    password = "password"
    with pytest.raises(SmtpError):
        client.auth_cram_md5("user", password)


def test_login_with_login_mechanism():
    sock = FakeSocket([b"334 a\r\n", b"334 b\r\n", b"235 ok\r\n"])
    client = SmtpClient(sock, Config(features=Features.INSECURE))
    password = "password"
    assert client.login("user", password, SmtpFeatures(login=True)) is True
    expected = (
        b"AUTH LOGIN\r\n"
        + base64.b64encode(b"user") + b"\r\n"
        + base64.b64encode(password.encode()) + b"\r\n"
    )
    assert bytes(sock.sent) == expected


def test_login_permanent_failure():
    sock = FakeSocket([b"334 a\r\n", b"334 b\r\n", b"535 denied\r\n"])
    client = SmtpClient(sock, Config(features=Features.INSECURE))
    password = "password"
    with pytest.raises(DeliveryFailed):
        client.login("user", password, SmtpFeatures(login=True))


def test_login_plaintext_disabled():
    sock = FakeSocket([])
    client = SmtpClient(sock, Config())
    password = "password"
    assert client.login("user", password, SmtpFeatures(login=True)) is False
    assert bytes(sock.sent) == b""


def test_login_cram_rejected_skips_login():
    challenge = base64.b64encode(b"<1.2@example.com>").decode()
    sock = FakeSocket([f"334 {challenge}\r\n".encode(), b"535 bad\r\n"])
    client = SmtpClient(sock, Config(features=Features.INSECURE))
    features = SmtpFeatures(cram_md5=True, login=True)
    password = "password"
    assert client.login("user", password, features) is False
    assert b"AUTH LOGIN" not in bytes(sock.sent)


def test_start_tls_opportunistic_fallback():
    config = Config(
        features=Features.SECURETRANSFER | Features.STARTTLS | Features.TLS_OPP
    )
    sock = FakeSocket([EHLO_REPLY, b"454 TLS not available\r\n"])
    client = SmtpClient(sock, config)
    assert client.start_tls("mx.example.com", "client.example.com") is False
    assert client.tls_active is False
    assert bytes(sock.sent).endswith(b"STARTTLS\r\n")


def test_start_tls_required_but_missing():
    config = Config(features=Features.SECURETRANSFER | Features.STARTTLS)
    client = SmtpClient(FakeSocket([EHLO_REPLY, b"454 TLS not available\r\n"]), config)
    with pytest.raises(DeliveryDeferred):
        client.start_tls("mx.example.com", "client.example.com")


def test_start_tls_greeting_failure():
    config = Config(features=Features.SECURETRANSFER | Features.STARTTLS)
    client = SmtpClient(FakeSocket([b"421 busy\r\n"]), config)
    with pytest.raises(DeliveryDeferred):
        client.start_tls("mx.example.com", "client.example.com")


def test_close_closes_socket():
    sock = FakeSocket([])
    SmtpClient(sock).close()
    assert sock.closed is True


def test_deliver_to_host_success(smtp_server):
    port, received = smtp_server()
    item = _item()
    deliver_to_host(item, _mx(port), Config(), "client.example.com")
    assert item.mailf.tell() == len(BODY)
    assert received == [
        "EHLO client.example.com",
        "MAIL FROM:<sender@example.com>",
        "RCPT TO:<rcpt@example.com>",
        "DATA",
        "Subject: hi",
        "",
        "..hidden",
        "body",
        ".",
        "QUIT",
    ]


def test_deliver_to_host_multiple_recipients(smtp_server):
    port, received = smtp_server()
    item = _item(addr="a@example.com,b@example.com")
    deliver_to_host(item, _mx(port), Config(), "client.example.com")
    assert item.mailf.tell() == len(BODY)
    rcpts = [line for line in received if line.startswith("RCPT TO:")]
    assert rcpts == ["RCPT TO:<a@example.com>", "RCPT TO:<b@example.com>"]


def test_deliver_to_host_permanent_rejection(smtp_server):
    port, _ = smtp_server({"RCPT": b"550 no such user\r\n"})
    with pytest.raises(DeliveryFailed) as info:
        deliver_to_host(_item(), _mx(port), Config(), "client.example.com")
    assert "did not like our RCPT TO" in str(info.value)


def test_deliver_to_host_temporary_rejection(smtp_server):
    port, _ = smtp_server({"RCPT": b"450 try later\r\n"})
    with pytest.raises(DeliveryDeferred):
        deliver_to_host(_item(), _mx(port), Config(), "client.example.com")


def test_deliver_to_host_corrupted_queue_file(smtp_server):
    port, _ = smtp_server()
    with pytest.raises(DeliveryFailed) as info:
        deliver_to_host(_item(body="no newline"), _mx(port), Config(), "client.example.com")
    assert "corrupted queue file" in str(info.value)


def test_deliver_to_host_connection_refused():
    listener = socket.create_server(("127.0.0.1", 0))
    port = listener.getsockname()[1]
    listener.close()
    with pytest.raises(DeliveryDeferred):
        deliver_to_host(_item(), _mx(port), Config(), "client.example.com")


def test_deliver_remote_via_smarthost(smtp_server):
    port, received = smtp_server()
    config = Config(smarthost="127.0.0.1", port=port)
    item = _item()
    deliver_remote(item, config, "client.example.com")
    assert item.mailf.tell() == len(BODY)
    assert "MAIL FROM:<sender@example.com>" in received
    assert received[-1] == "QUIT"


def test_deliver_remote_badly_formed_address():
    with pytest.raises(DeliveryFailed):
        deliver_remote(_item(addr="localuser"), Config(), "client.example.com")