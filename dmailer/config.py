"""Parsing of the agent configuration and SMTP authentication files."""

from __future__ import annotations

import enum
import re
import string
from dataclasses import dataclass, field

from .util import EX_CONFIG, EX_DATAERR, EX_NOINPUT, DmaError

SHA256_DIGEST_LENGTH = 32
MAX_LINE_LENGTH = 1000
DEFAULT_CONF_PATH = "/etc/dma/dma.conf"

_CONF_SEPARATORS = " \t"
_AUTH_HOST_SEPARATORS = ":| \t"
_ATOI = re.compile(r"\s*([+-]?\d+)")


class Features(enum.IntFlag):
    """Feature switches set in the configuration file."""

    NONE = 0
    STARTTLS = 0x002
    SECURETRANSFER = 0x004
    NOSSL = 0x008
    DEFER = 0x010
    INSECURE = 0x020
    FULLBOUNCE = 0x040
    TLS_OPP = 0x080
    NULLCLIENT = 0x100
    VERIFYCERT = 0x200


class ConfigError(DmaError):
    """The configuration or authentication file is invalid."""

    default_exit_code = EX_CONFIG


@dataclass
class AuthUser:
    """Credentials used when talking to one SMTP host."""

    login: str
    host: str
    password: str


@dataclass
class Config:
    """Runtime configuration of the mail agent."""

    smarthost: str | None = None
    port: int = 25
    aliases: str = "/etc/aliases"
    spooldir: str = "/var/spool/dma"
    authpath: str | None = None
    certfile: str | None = None
    features: Features = Features.NONE
    mailname: str | None = None
    masquerade_host: str | None = None
    masquerade_user: str | None = None
    fingerprint: bytes | None = None
    authusers: list[AuthUser] = field(default_factory=list)

    def auth_for_host(self, host: str) -> AuthUser | None:
        """Return the credentials for host; the last matching entry wins."""
        return next((a for a in reversed(self.authusers) if a.host == host), None)


_VALUE_KEYS = {
    "SMARTHOST": "smarthost",
    "ALIASES": "aliases",
    "SPOOLDIR": "spooldir",
    "AUTHPATH": "authpath",
    "CERTFILE": "certfile",
    "MAILNAME": "mailname",
}

_FLAG_KEYS = {
    "STARTTLS": Features.STARTTLS,
    "OPPORTUNISTIC_TLS": Features.TLS_OPP,
    "SECURETRANSFER": Features.SECURETRANSFER,
    "DEFER": Features.DEFER,
    "INSECURE": Features.INSECURE,
    "FULLBOUNCE": Features.FULLBOUNCE,
    "NULLCLIENT": Features.NULLCLIENT,
    "VERIFYCERT": Features.VERIFYCERT,
}


def trim_line(line: str) -> str:
    """Cut the line at its first newline and double a leading dot."""
    line = line.split("\n", 1)[0]
    if line.startswith("."):
        if len(line) + 2 > MAX_LINE_LENGTH:
            raise DmaError("Cannot escape leading dot.  Buffer overflow", EX_DATAERR)
        line = "." + line
    return line


def _chomp(line: str) -> str:
    return line[:-1] if line.endswith("\n") else line


def _strsep(text: str, separators: str) -> tuple[str, str | None]:
    for index, char in enumerate(text):
        if char in separators:
            return text[:index], text[index + 1 :]
    return text, None


def _atoi(text: str) -> int:
    match = _ATOI.match(text)
    return int(match.group(1)) if match else 0


def _open_text(path):
    return open(path, encoding="utf-8", errors="surrogateescape", newline="")


def _parse_fingerprint(data: str | None) -> bytes:
    if data is None or len(data) != SHA256_DIGEST_LENGTH * 2:
        raise ConfigError("invalid sha256 fingerprint length")
    if any(c not in string.hexdigits for c in data):
        raise ConfigError("failed to read fingerprint")
    return bytes.fromhex(data)


def _apply_setting(config: Config, word: str, data: str | None, path, lineno: int) -> None:
    if word in _VALUE_KEYS and data is not None:
        setattr(config, _VALUE_KEYS[word], data)
    elif word == "PORT" and data is not None:
        config.port = _atoi(data)
    elif word == "MASQUERADE" and data is not None:
        user, sep, host = data.rpartition("@")
        if not sep:
            user, host = "", data
        config.masquerade_host = host or None
        config.masquerade_user = user or None
    elif word == "FINGERPRINT":
        config.fingerprint = _parse_fingerprint(data)
    elif word in _FLAG_KEYS and data is None:
        config.features |= _FLAG_KEYS[word]
    else:
        raise ConfigError(f"syntax error in {path}:{lineno}")


def parse_conf(path, config: Config | None = None) -> Config:
    """Read the configuration file into config; a missing file is not an error."""
    config = Config() if config is None else config
    try:
        handle = _open_text(path)
    except FileNotFoundError:
        return config
    except OSError as exc:
        raise ConfigError(f"can not open config `{path}': {exc.strerror}", EX_NOINPUT) from exc

    with handle:
        for lineno, raw in enumerate(handle, start=1):
            line = _chomp(raw).split("#", 1)[0]
            word, data = _strsep(line, _CONF_SEPARATORS)
            if not word:
                continue
            _apply_setting(config, word, data or None, path, lineno)

    if Features.NULLCLIENT in config.features and config.smarthost is None:
        raise ConfigError(f"{path}: NULLCLIENT requires SMARTHOST")
    return config


def parse_authfile(path) -> list[AuthUser]:
    """Read ``user|host:password`` lines, skipping comments and blank lines."""
    try:
        handle = _open_text(path)
    except OSError as exc:
        raise ConfigError(f"can not open auth file `{path}': {exc.strerror}", EX_NOINPUT) from exc

    users: list[AuthUser] = []
    with handle:
        for lineno, raw in enumerate(handle, start=1):
            line = _chomp(raw)
            if not line or line.startswith("#"):
                continue
            login, rest = _strsep(line, "|")
            host, secret = (None, None) if rest is None else _strsep(rest, _AUTH_HOST_SEPARATORS)
            if host is None or secret is None:
                raise ConfigError(f"syntax error in authfile {path}:{lineno}")
            users.append(AuthUser(login=login, host=host, password=secret))
    return users