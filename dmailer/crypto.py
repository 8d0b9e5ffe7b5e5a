"""TLS setup, certificate fingerprints and CRAM-MD5 authentication."""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import ssl

from .config import SHA256_DIGEST_LENGTH, Config, Features
from .util import DeliveryDeferred

logger = logging.getLogger("dmailer")


def _as_bytes(value: bytes | str) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8", "surrogateescape")
    return bytes(value)


def hmac_md5(text: bytes | str, key: bytes | str) -> bytes:
    """Return the HMAC-MD5 digest of text under key (RFC 2104)."""
    return hmac.new(_as_bytes(key), _as_bytes(text), hashlib.md5).digest()


def cram_md5_response(login: str, password: str, challenge: str) -> str:
    """Answer a base64 CRAM-MD5 challenge with the base64 ``login digest`` reply.

    Raises ValueError when the challenge is not valid base64.
    """
    decoded = base64.b64decode(challenge.strip())
    decoded = decoded.split(b"\0", 1)[0]
    digest = hmac_md5(decoded, password).hex()
    answer = f"{login} {digest}".encode("utf-8", "surrogateescape")
    return base64.b64encode(answer).decode("ascii")


def verify_fingerprint(cert_der: bytes, expected: bytes) -> bool:
    """Tell whether the SHA-256 digest of the DER certificate matches expected."""
    if len(expected) != SHA256_DIGEST_LENGTH:
        logger.warning(
            "sha256 fingerprint has unexpected length of %d bytes", len(expected)
        )
        return False
    digest = hashlib.sha256(cert_der).digest()
    if not hmac.compare_digest(digest, expected):
        logger.warning("fingerprints do not match")
        return False
    logger.debug("successfully verified server certificate fingerprint")
    return True


def make_tls_context(config: Config) -> ssl.SSLContext:
    """Build the client TLS context described by config.

    Raises DeliveryDeferred when the client certificate or the default CA
    paths cannot be loaded.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)

    if config.certfile is not None:
        try:
            context.load_cert_chain(config.certfile)
        except (ssl.SSLError, OSError) as exc:
            logger.error("SSL: Cannot load certificate `%s': %s", config.certfile, exc)
            raise DeliveryDeferred("remote delivery deferred") from exc

    if Features.VERIFYCERT in config.features:
        context.check_hostname = True
        context.verify_mode = ssl.CERT_REQUIRED
        try:
            context.load_default_certs(ssl.Purpose.SERVER_AUTH)
        except (ssl.SSLError, OSError) as exc:
            logger.info(
                "remote delivery deferred: SSL failed to set default CA path: %s", exc
            )
            raise DeliveryDeferred(
                "remote delivery deferred: SSL failed to set default CA path"
            ) from exc
    else:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    return context