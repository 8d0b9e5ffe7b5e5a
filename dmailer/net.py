"""SMTP client side of remote delivery."""

from __future__ import annotations

import binascii
import logging
import socket
import ssl
from dataclasses import dataclass

from .config import Config, Features, trim_line
from .crypto import cram_md5_response, make_tls_context, verify_fingerprint
from .dns import MXHost, get_mx_list
from .queue import QueueItem
from .util import (
    BUF_SIZE,
    CON_TIMEOUT,
    ERRMSG_SIZE,
    EX_TEMPFAIL,
    SMTP_PORT,
    DeliveryDeferred,
    DeliveryFailed,
    DmaError,
    hostname,
)

logger = logging.getLogger("dmailer")

_MAX_COMMAND = 4096 - 2
_ENCODING = "utf-8"
_ERRORS = "surrogateescape"


class SmtpError(DmaError):
    """The conversation with the remote SMTP server went wrong."""

    default_exit_code = EX_TEMPFAIL


@dataclass
class SmtpFeatures:
    """Extensions a server announced in its EHLO reply."""

    starttls: bool = False
    cram_md5: bool = False
    login: bool = False


def parse_ehlo_response(text: str) -> SmtpFeatures:
    """Read STARTTLS and AUTH mechanisms from a raw EHLO reply.

    Raises SmtpError when a line is not terminated or does not start
    with ``250-`` or ``250 ``.
    """
    features = SmtpFeatures()
    rest = text
    while rest:
        line, sep, rest = rest.partition("\n")
        if not sep:
            raise SmtpError("incomplete EHLO response")
        line = line.removesuffix("\r")
        if not line:
            break
        if not (line.startswith("250-") or line.startswith("250 ")):
            logger.error("Invalid line: %s", line)
            raise SmtpError(f"Invalid line: {line}")
        keyword = line[4:]
        if keyword == "STARTTLS":
            features.starttls = True
        elif keyword.startswith("AUTH "):
            for method in filter(None, keyword[5:].split(" ")):
                if method == "CRAM-MD5":
                    features.cram_md5 = True
                elif method == "LOGIN":
                    features.login = True

    logger.debug("Server greeting successfully completed")
    logger.debug(
        "  Server %s STARTTLS",
        "supports" if features.starttls else "does not support",
    )
    if features.cram_md5:
        logger.debug("  Server supports CRAM-MD5 authentication")
    if features.login:
        logger.debug("  Server supports LOGIN authentication")
    return features


class SmtpClient:
    """One SMTP conversation over a connected socket."""

    def __init__(self, sock, config: Config | None = None) -> None:
        self.sock = sock
        self.config = config if config is not None else Config()
        self.last_reply = ""
        self.tls_active = False
        self._buffer = b""

    def send_command(self, command: str) -> int:
        """Send one command line terminated by CRLF; return the bytes sent."""
        data = command.encode(_ENCODING, _ERRORS)
        if len(data) >= _MAX_COMMAND:
            raise SmtpError("Internal error: oversized command string")
        data += b"\r\n"
        try:
            self.sock.sendall(data)
        except OSError as exc:
            raise SmtpError(str(exc)) from exc
        return len(data)

    def _readline(self) -> bytes:
        while b"\n" not in self._buffer:
            try:
                chunk = self.sock.recv(BUF_SIZE)
            except socket.timeout as exc:
                raise SmtpError("Timeout reached") from exc
            except OSError as exc:
                raise SmtpError(str(exc)) from exc
            if not chunk:
                raise SmtpError("connection closed by remote host")
            self._buffer += chunk
        line, _, self._buffer = self._buffer.partition(b"\n")
        return line + b"\n"

    def read_reply(self) -> tuple[int, str]:
        """Read a complete, possibly multi-line reply.

        Returns the status code of the last line and the raw reply text.
        """
        lines: list[str] = []
        while True:
            raw = self._readline().decode(_ENCODING, _ERRORS)
            lines.append(raw)
            digits = ""
            for char in raw:
                if not char.isdigit():
                    break
                digits += char
            status = int(digits) if digits else 0
            separator = raw[len(digits) : len(digits) + 1]
            if separator == " ":
                break
            if separator != "-":
                self.last_reply = "invalid syntax in reply from server"
                raise SmtpError(self.last_reply)
        text = "".join(lines)
        self.last_reply = text.rstrip("\r\n")[: ERRMSG_SIZE - 1]
        return status, text

    def _exchange(self, command: str) -> int:
        """Send command and return the reply class, or -1 on a network error."""
        try:
            self.send_command(command)
            code, _ = self.read_reply()
        except SmtpError as exc:
            self.last_reply = str(exc)
            return -1
        return code // 100

    def server_greeting(self, local_hostname: str) -> SmtpFeatures:
        """Say EHLO and return the features the server announced."""
        self.send_command(f"EHLO {local_hostname}")
        code, text = self.read_reply()
        if code // 100 != 2:
            raise SmtpError(f"EHLO rejected: {self.last_reply}")
        return parse_ehlo_response(text)

    def start_tls(self, server_hostname: str, local_hostname: str) -> bool:
        """Switch the connection to TLS as the configuration asks.

        Returns False when opportunistic STARTTLS is not offered and the
        conversation goes on in plain text; raises DeliveryDeferred on failure.
        """
        features = self.config.features
        context = make_tls_context(self.config)

        if Features.STARTTLS in features:
            try:
                self.server_greeting(local_hostname)
            except SmtpError as exc:
                logger.error(
                    "remote delivery deferred: could not perform server greeting: %s", exc
                )
                raise DeliveryDeferred(
                    f"remote delivery deferred: could not perform server greeting: {exc}"
                ) from exc
            if self._exchange("STARTTLS") != 2:
                if Features.TLS_OPP not in features:
                    logger.error(
                        "remote delivery deferred: STARTTLS not available: %s",
                        self.last_reply,
                    )
                    raise DeliveryDeferred(
                        f"remote delivery deferred: STARTTLS not available: {self.last_reply}"
                    )
                logger.info(
                    "in opportunistic TLS mode, STARTTLS not available: %s", self.last_reply
                )
                return False

        try:
            tls_sock = context.wrap_socket(self.sock, server_hostname=server_hostname)
        except (ssl.SSLError, OSError, ValueError) as exc:
            logger.error("remote delivery deferred: SSL handshake failed fatally: %s", exc)
            raise DeliveryDeferred(
                f"remote delivery deferred: SSL handshake failed fatally: {exc}"
            ) from exc
        self.sock = tls_sock
        self._buffer = b""
        self.tls_active = True

        cert = tls_sock.getpeercert(binary_form=True)
        if cert is None:
            logger.warning("remote delivery deferred: Peer did not provide certificate")
            raise DeliveryDeferred(
                "remote delivery deferred: Peer did not provide certificate"
            )
        if self.config.fingerprint is not None and not verify_fingerprint(
            cert, self.config.fingerprint
        ):
            raise DeliveryDeferred(
                "remote delivery deferred: server certificate fingerprint mismatch"
            )
        return True

    def auth_cram_md5(self, login: str, password: str) -> bool:
        """Authenticate with CRAM-MD5.

        Returns False when the server does not accept the mechanism and
        raises SmtpError when it rejects the credentials.
        """
        try:
            self.send_command("AUTH CRAM-MD5")
            code, text = self.read_reply()
        except SmtpError as exc:
            logger.debug("smarthost authentication: AUTH cram-md5 not available: %s", exc)
            return False
        if code // 100 != 3:
            logger.debug(
                "smarthost authentication: AUTH cram-md5 not available: %s",
                self.last_reply,
            )
            return False

        challenge = text[4:].split("\n", 1)[0]
        try:
            answer = cram_md5_response(login, password, challenge)
        except (ValueError, binascii.Error) as exc:
            raise SmtpError(f"can not decode auth challenge: {exc}") from exc

        self.send_command(answer)
        code, _ = self.read_reply()
        if code // 100 != 2:
            raise SmtpError(f"AUTH cram-md5 failed: {self.last_reply}")
        return True

    def login(self, login: str, password: str, features: SmtpFeatures) -> bool:
        """Authenticate with the best mechanism the server offers.

        Returns True unless authentication was tried and did not go through;
        raises DeliveryFailed when the server rejects it permanently.
        """
        if features.cram_md5:
            try:
                if self.auth_cram_md5(login, password):
                    return True
            except SmtpError as exc:
                logger.warning("remote delivery deferred: AUTH cram-md5 failed: %s", exc)
                return False

        if not features.login:
            return True

        config_features = self.config.features
        if (
            Features.INSECURE not in config_features
            and Features.SECURETRANSFER not in config_features
        ):
            logger.warning(
                "non-encrypted SMTP login is disabled in config, so skipping it."
            )
            return False

        if self._exchange("AUTH LOGIN") != 3:
            logger.info(
                "remote delivery deferred: AUTH login not available: %s", self.last_reply
            )
            return False

        steps = ((login, 3, "AUTH login failed"), (password, 2, "Authentication failed"))
        for value, expected, what in steps:
            encoded = _b64(value)
            status = self._exchange(encoded)
            if status != expected:
                outcome = "failed" if status == 5 else "deferred"
                logger.info("remote delivery %s: %s: %s", outcome, what, self.last_reply)
                if status == 5:
                    raise DeliveryFailed(f"{what}: {self.last_reply}")
                return False
        return True

    def close(self) -> None:
        """Close the connection."""
        try:
            self.sock.close()
        except OSError:
            pass


def _b64(value: str) -> str:
    import base64

    return base64.b64encode(value.encode(_ENCODING, _ERRORS)).decode("ascii")


def _open_connection(host: MXHost):
    logger.info(
        "trying remote delivery to %s [%s] pref %d", host.host, host.addr, host.pref
    )
    try:
        sock = socket.socket(host.family, host.socktype, host.proto)
    except OSError as exc:
        logger.info("socket for %s [%s] failed: %s", host.host, host.addr, exc)
        raise DeliveryDeferred(f"socket for {host.host} [{host.addr}] failed: {exc}") from exc
    try:
        sock.settimeout(CON_TIMEOUT)
        sock.connect(host.sockaddr)
    except OSError as exc:
        sock.close()
        logger.info("connect to %s [%s] failed: %s", host.host, host.addr, exc)
        raise DeliveryDeferred(f"connect to {host.host} [{host.addr}] failed: {exc}") from exc
    return sock


def _expect(client: SmtpClient, host: MXHost, what: str, expected: int) -> None:
    try:
        code, _ = client.read_reply()
        status = code // 100
        detail = client.last_reply
    except SmtpError as exc:
        status = -1
        detail = str(exc)
    if status == 5:
        logger.error(
            "remote delivery to %s [%s] failed after %s: %s",
            host.host, host.addr, what, detail,
        )
        raise DeliveryFailed(
            f"{host.host} [{host.addr}] did not like our {what}:\n{detail}"
        )
    if status != expected:
        logger.info(
            "remote delivery deferred: %s [%s] failed after %s: %s",
            host.host, host.addr, what, detail,
        )
        raise DeliveryDeferred(
            f"remote delivery deferred: {host.host} [{host.addr}] failed after {what}: {detail}"
        )


def _send(client: SmtpClient, command: str) -> None:
    try:
        client.send_command(command)
    except SmtpError as exc:
        logger.info("remote delivery deferred: write error: %s", exc)
        raise DeliveryDeferred("remote delivery deferred: write error") from exc


def _session(
    client: SmtpClient, item: QueueItem, host: MXHost, config: Config, local_hostname: str
) -> None:
    features = config.features
    if Features.SECURETRANSFER not in features or Features.STARTTLS in features:
        _expect(client, host, "connect", 2)

    if Features.SECURETRANSFER in features:
        client.start_tls(host.host, local_hostname)
        logger.debug("SSL initialization successful")
        if Features.STARTTLS not in features:
            _expect(client, host, "connect", 2)

    try:
        ehlo = client.server_greeting(local_hostname)
    except SmtpError as exc:
        logger.error(
            "Could not perform server greeting at %s [%s]: %s", host.host, host.addr, exc
        )
        raise DeliveryFailed(
            f"Could not perform server greeting at {host.host} [{host.addr}]: {exc}"
        ) from exc

    auth = config.auth_for_host(host.host)
    if auth is not None:
        logger.info("using SMTP authentication for user %s", auth.login)
        try:
            logged_in = client.login(auth.login, auth.password, ehlo)
        except DeliveryFailed as exc:
            logger.error("remote delivery failed: SMTP login failed: %s", exc)
            raise DeliveryFailed(f"SMTP login to {host.host} failed") from exc
        if not logged_in:
            logger.warning("SMTP login not available. Trying without.")

    _send(client, f"MAIL FROM:<{item.sender}>")
    _expect(client, host, "MAIL FROM", 2)

    for to_addr in filter(None, item.addr.split(",")):
        _send(client, f"RCPT TO:<{to_addr}>")
        _expect(client, host, "RCPT TO", 2)

    _send(client, "DATA")
    _expect(client, host, "DATA", 3)

    for line in item.mailf:
        if not line.endswith("\n"):
            logger.critical("remote delivery failed: corrupted queue file")
            raise DeliveryFailed("corrupted queue file")
        _send(client, trim_line(line))

    _send(client, ".")
    _expect(client, host, "final DATA", 2)

    if client._exchange("QUIT") != 2:
        logger.info("remote delivery succeeded but QUIT failed: %s", client.last_reply)


def deliver_to_host(
    item: QueueItem, host: MXHost, config: Config, local_hostname: str | None = None
) -> None:
    """Deliver item to one mail exchanger.

    Raises DeliveryDeferred for temporary and DeliveryFailed for permanent
    failures.
    """
    if local_hostname is None:
        local_hostname = hostname(config)
    try:
        item.mailf.seek(0)
    except (OSError, ValueError, AttributeError) as exc:
        raise DeliveryFailed(f"can not seek: {exc}") from exc

    client = SmtpClient(_open_connection(host), config)
    try:
        _session(client, item, host, config, local_hostname)
    finally:
        client.close()


def deliver_remote(item: QueueItem, config: Config, local_hostname: str | None = None) -> None:
    """Deliver item through the smarthost or the recipient domain's MX hosts."""
    if config.smarthost is not None:
        host = config.smarthost
        port = config.port
        smarthost = True
        logger.info("using smarthost (%s:%i)", host, port)
    else:
        _, sep, host = item.addr.rpartition("@")
        if not sep:
            raise DeliveryFailed(f"Internal error: badly formed address {item.addr}")
        port = SMTP_PORT
        smarthost = False

    try:
        hosts = get_mx_list(host, port, smarthost)
    except (DeliveryDeferred, DeliveryFailed) as exc:
        outcome = "deferred" if isinstance(exc, DeliveryDeferred) else "failed"
        logger.info("remote delivery %s: DNS lookup failure: host %s not found", outcome, host)
        raise

    deferred: DeliveryDeferred | None = None
    for mx in hosts:
        try:
            deliver_to_host(item, mx, config, local_hostname)
            return
        except DeliveryDeferred as exc:
            deferred = exc
    if deferred is not None:
        raise deferred
    raise DeliveryDeferred(f"DNS lookup failure: host {host} not found")