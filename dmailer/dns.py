"""MX lookup and address resolution for remote delivery."""

from __future__ import annotations

import logging
import socket
from dataclasses import dataclass

import dns.exception
import dns.resolver

from .util import DeliveryDeferred, DeliveryFailed

logger = logging.getLogger("dmailer")


@dataclass
class MXHost:
    """One address of a mail exchanger, ready to connect to."""

    host: str
    addr: str
    pref: int
    family: int
    socktype: int
    proto: int
    sockaddr: tuple


def sort_hosts(hosts: list[MXHost]) -> list[MXHost]:
    """Order hosts by preference, IPv6 before IPv4 on equal preference."""
    return sorted(hosts, key=lambda h: (h.pref, -h.family))


def _numeric_address(sockaddr: tuple) -> str:
    try:
        return socket.getnameinfo(
            sockaddr, socket.NI_NUMERICHOST | socket.NI_NUMERICSERV
        )[0]
    except (OSError, socket.gaierror):
        return str(sockaddr[0])


def resolve_host(pref: int, host: str, port: int) -> list[MXHost]:
    """Resolve host to the TCP addresses to try for delivery.

    Raises DeliveryDeferred when the name does not resolve for now and
    DeliveryFailed for any other resolver error.
    """
    try:
        results = socket.getaddrinfo(
            host, str(port), socket.AF_UNSPEC, socket.SOCK_STREAM, socket.IPPROTO_TCP
        )
    except socket.gaierror as exc:
        if exc.errno in (socket.EAI_AGAIN, socket.EAI_NONAME):
            raise DeliveryDeferred(f"DNS lookup failure: host {host} not found") from exc
        raise DeliveryFailed(f"DNS lookup failure: host {host} not found") from exc

    return [
        MXHost(
            host=host,
            addr=_numeric_address(sockaddr),
            pref=pref,
            family=family,
            socktype=socktype,
            proto=proto,
            sockaddr=sockaddr,
        )
        for family, socktype, proto, _canonname, sockaddr in results
    ]


def _lookup_mx(host: str):
    """Return the MX records of host, or None when it has none."""
    try:
        return list(dns.resolver.resolve(host, "MX"))
    except dns.resolver.NoAnswer:
        return None
    except dns.resolver.NXDOMAIN as exc:
        raise DeliveryFailed(f"DNS lookup failure: host {host} not found") from exc
    except dns.exception.DNSException as exc:
        raise DeliveryDeferred(f"DNS lookup failure: host {host} not found") from exc


def get_mx_list(host: str, port: int, no_mx: bool = False) -> list[MXHost]:
    """Return the addresses to deliver mail for host to, best first.

    With no_mx the host itself is used without looking up MX records,
    as is done when there are none.
    """
    hosts: list[MXHost] = []
    have_mx = False

    records = None if no_mx else _lookup_mx(host)
    for record in records or ():
        have_mx = True
        exchange = record.exchange.to_text(omit_final_dot=True)
        try:
            hosts.extend(resolve_host(record.preference, exchange, port))
        except DeliveryDeferred:
            logger.info("MX host %s does not resolve for now", exchange)

    if not have_mx:
        hosts = resolve_host(0, host, port)
    elif not hosts:
        raise DeliveryDeferred(f"DNS lookup failure: host {host} not found")

    return sort_hosts(hosts)