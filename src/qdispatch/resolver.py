from __future__ import annotations

import ipaddress
import logging
import operator
import re
import socket
from typing import Any, Mapping, Optional, Tuple

from cachetools import LRUCache, cachedmethod

from .errors import ConfigurationError, ResolutionError

logger = logging.getLogger(__name__)

# Port used only to let the kernel route a connectionless UDP socket; nothing
# is ever sent to it.
PROBE_PORT = 30000

_HOSTNAME_RE = re.compile(r"^[a-zA-Z0-9._-]{1,255}$")


def family_tag(family: Optional[int]) -> str:
    """Brief: Short family marker used inside slot and channel ids.

    Inputs:
      - family: socket.AF_INET, socket.AF_INET6 or None (unix paths).

    Outputs:
      - str: '4', '6' or 'u'.
    """

    if family == socket.AF_INET:
        return "4"
    if family == socket.AF_INET6:
        return "6"
    return "u"


def parse_host(host: str) -> Tuple[str, Optional[int]]:
    """Brief: Split an 'addr:port' string on its last colon.

    Inputs:
      - host: String such as '1.2.3.4:27015', '[::1]:53' or 'example.com'.

    Outputs:
      - (addr, port): port is None when there is no numeric suffix.

    Example:
      >>> parse_host("example.com:27015")
      ('example.com', 27015)
      >>> parse_host("example.com")
      ('example.com', None)
    """

    addr, sep, port = host.rpartition(":")
    if not sep or not port.isdigit():
        return host, None
    return addr, int(port)


def _is_bracketed(addr: str) -> bool:
    return len(addr) > 2 and addr[0] == "[" and addr[-1] == "]"


def validate_address(addr: str) -> None:
    """Brief: Check that addr is a bracketed IPv6, an IPv4 or a hostname.

    Inputs:
      - addr: Address string from a target definition.

    Outputs:
      - None.

    Raises:
      - ConfigurationError: When every filter fails.
    """

    if _is_bracketed(addr):
        try:
            ipaddress.IPv6Address(addr[1:-1])
        except ValueError:
            raise ConfigurationError(f"Wrong address (IPv6 filter failed): {addr}")
        return
    try:
        ipaddress.IPv4Address(addr)
        return
    except ValueError:
        pass
    if not _HOSTNAME_RE.match(addr):
        raise ConfigurationError(
            f"Wrong address (IPv4 and hostname filters failed): {addr}"
        )


def fill_query_connect_hosts(
    server_info: Mapping[str, Any],
) -> Tuple[str, Optional[int], str, Optional[int]]:
    """Brief: Extract server and connect addresses from a target definition.

    Inputs:
      - server_info: Mapping with either 'host' ('addr:port') or 'addr'
        (+ optional 'port'), and optionally 'connect_host' or 'connect_addr'
        (+ optional 'connect_port') naming a different endpoint to dial.

    Outputs:
      - (server_addr, server_port, connect_addr, connect_port)

    Raises:
      - ConfigurationError: Missing 'host'/'addr' or an invalid server address.

    Example:
      >>> fill_query_connect_hosts({"host": "1.2.3.4:27015"})
      ('1.2.3.4', 27015, '1.2.3.4', 27015)
    """

    if not server_info.get("host") and not server_info.get("addr"):
        raise ConfigurationError("Missing server info keys 'host' and 'addr'")

    if server_info.get("addr"):
        server_addr = str(server_info["addr"])
        port = server_info.get("port")
        server_port = int(port) if port is not None else None
    else:
        server_addr, server_port = parse_host(str(server_info["host"]))

    connect_addr, connect_port = server_addr, server_port
    if server_info.get("connect_addr"):
        connect_addr = str(server_info["connect_addr"])
        if server_info.get("connect_port") is not None:
            connect_port = int(server_info["connect_port"])
    elif server_info.get("connect_host"):
        connect_addr, connect_port = parse_host(str(server_info["connect_host"]))

    validate_address(server_addr)
    return server_addr, server_port, connect_addr, connect_port


def _literal(addr: str) -> Optional[Tuple[int, str]]:
    try:
        ip = ipaddress.ip_address(addr)
    except ValueError:
        return None
    if ip.version == 6:
        return socket.AF_INET6, ip.compressed
    return socket.AF_INET, ip.compressed


def canonical_address(addr: str) -> str:
    """Brief: Literal IP in the form resolve() returns; other strings unchanged.

    Inputs:
      - addr: Address string, e.g. the host part reported by recvfrom().

    Outputs:
      - str: Compressed literal for IPv4/IPv6 input (IPv4-mapped IPv6
        included), addr itself otherwise.
    """

    literal = _literal(addr)
    return addr if literal is None else literal[1]


class AddressResolver:
    """
    Resolve hostnames/IP strings to (family, literal address) pairs.

    Inputs:
      - maxsize: Upper bound on memoized entries.
    Outputs:
      - resolve(host) -> (family, address), memoized by input string.

    Lookups are tried in order: literal syntax, gethostbyname(), then a
    connectionless UDP probe whose peer name reveals the resolved address.
    Failures are not cached.
    """

    def __init__(self, maxsize: int = 65536) -> None:
        self._cache: LRUCache = LRUCache(maxsize=int(maxsize))

    def __len__(self) -> int:
        return len(self._cache)

    def clear(self) -> None:
        self._cache.clear()

    @cachedmethod(operator.attrgetter("_cache"))
    def resolve(self, host: str) -> Tuple[int, str]:
        """
        Brief: Resolve host to (family, literal address).

        Inputs:
          - host: '[v6]', IPv4 literal, IPv6 literal or hostname.
        Outputs:
          - (socket.AF_INET | socket.AF_INET6, canonical literal address)

        Raises:
          - ConfigurationError: Bracketed address that is not valid IPv6.
          - ResolutionError: No strategy produced an address.

        Example:
          >>> AddressResolver().resolve("[::1]")[1]
          '::1'
        """

        if not host:
            raise ResolutionError("Unable to resolve empty hostname")

        if _is_bracketed(host):
            try:
                ip = ipaddress.IPv6Address(host[1:-1])
            except ValueError:
                raise ConfigurationError(f"Wrong address (IPv6 filter failed) {host!r}")
            return socket.AF_INET6, ip.compressed

        literal = _literal(host)
        if literal is not None:
            return literal

        try:
            found = socket.gethostbyname(host)
        except (OSError, UnicodeError) as exc:
            logger.debug("gethostbyname(%s) failed: %s", host, exc)
        else:
            if found != host:
                literal = _literal(found)
                if literal is not None:
                    return literal

        literal = self._probe(host)
        if literal is not None:
            return literal
        raise ResolutionError(f"Unable to resolve hostname {host!r}")

    def _probe(self, host: str) -> Optional[Tuple[int, str]]:
        """Brief: Resolve via a connected UDP socket's peer name.

        Inputs:
          - host: Hostname.
        Outputs:
          - (family, address) or None. No datagram is sent.
        """

        try:
            infos = socket.getaddrinfo(host, PROBE_PORT, type=socket.SOCK_DGRAM)
        except (OSError, UnicodeError) as exc:
            logger.debug("UDP probe lookup for %s failed: %s", host, exc)
            return None

        for family, socktype, proto, _canon, sockaddr in infos:
            if family not in (socket.AF_INET, socket.AF_INET6):
                continue
            try:
                s = socket.socket(family, socktype, proto)
            except OSError as exc:
                logger.debug("UDP probe socket for %s failed: %s", host, exc)
                continue
            try:
                s.connect(sockaddr)
                peer = s.getpeername()
            except OSError as exc:
                logger.debug("UDP probe connect for %s failed: %s", host, exc)
                continue
            finally:
                s.close()
            if peer[1] != PROBE_PORT:
                continue
            literal = _literal(str(peer[0]).split("%", 1)[0])
            if literal is not None:
                return literal
        return None
