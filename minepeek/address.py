# minepeek - A Minecraft server status checker
# Copyright (C) 2016-2022 Lloyd Dilley, Felix Ern (MindSolve)
# http://www.dilley.me/
#
# This program is free software; you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation; either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License along
# with this program; if not, write to the Free Software Foundation, Inc.,
# 51 Franklin Street, Fifth Floor, Boston, MA 02110-1301 USA.
import ipaddress
import logging
import socket
from dataclasses import dataclass
from typing import List, Optional, Tuple

import dns.exception
import dns.resolver

from .errors import AddressError

logger = logging.getLogger(__name__)

DEFAULT_PORT = 25565  # default TCP port for SLP queries
SRV_PREFIX = "_minecraft._tcp."

@dataclass(frozen=True)
class Endpoint:
  """A Minecraft server address: host name or IP literal, and TCP port."""
  host: str
  port: int = DEFAULT_PORT

  def __str__(self) -> str:
    if ":" in self.host:
      return "[%s]:%d" % (self.host, self.port)
    return "%s:%d" % (self.host, self.port)

def _parse_port(port_str: str, text: str) -> int:
  if not port_str.isascii() or not port_str.isdigit():
    raise AddressError("invalid port in server address %r" % text)
  port = int(port_str)
  if not 0 < port <= 0xFFFF:
    raise AddressError("port %d out of range in server address %r" % (port, text))
  return port

def _is_ip_literal(host: str) -> bool:
  try:
    ipaddress.ip_address(host)
  except ValueError:
    return False
  return True

def split_address(text: str) -> Tuple[str, Optional[int]]:
  """
  Split a user supplied server address into host and port.

  Accepted forms are `host`, `host:port`, `[v6]`, `[v6]:port` and a bare IPv6 literal.
  The port is `None` if the address does not name one.

  :param text: The server address, as typed by the user or stored in servers.dat
  """
  text = text.strip()
  if not text:
    raise AddressError("empty server address")

  port: Optional[int] = None
  if text.startswith("["):
    end = text.find("]")
    if end == -1:
      raise AddressError("unterminated IPv6 literal in server address %r" % text)
    host = text[1:end]
    rest = text[end + 1:]
    if rest.startswith(":"):
      port = _parse_port(rest[1:], text)
    elif rest:
      raise AddressError("unexpected text after IPv6 literal in server address %r" % text)
  elif text.count(":") == 1:
    host, port_str = text.split(":")
    port = _parse_port(port_str, text)
  elif ":" in text:
    # Several colons without brackets: only valid as a bare IPv6 address
    if not _is_ip_literal(text):
      raise AddressError("malformed server address %r" % text)
    host = text
  else:
    host = text

  if not host or any(c.isspace() for c in host):
    raise AddressError("malformed host name in server address %r" % text)

  return host, port

def parse_address(text: str, default_port: int = DEFAULT_PORT) -> Endpoint:
  """Parse `host[:port]` into an `Endpoint`, using `default_port` when the port is omitted."""
  host, port = split_address(text)
  return Endpoint(host, default_port if port is None else port)

def lookup_srv(host: str, lifetime: float = 2.0) -> Optional[Endpoint]:
  """
  Look up the `_minecraft._tcp` SRV record of a host name.

  Returns `None` if there is no usable record, the lookup failure is only logged.
  See https://wiki.vg/Server_List_Ping#Resolving_the_address
  """
  try:
    answers = dns.resolver.resolve(SRV_PREFIX + host, "SRV", lifetime=lifetime)
  except dns.exception.DNSException as e:
    logger.debug("No SRV record for %s: %s", host, e)
    return None

  records = sorted(answers, key=lambda r: (r.priority, -r.weight))
  if not records:
    return None

  target = str(records[0].target).rstrip(".")
  if not target:
    return None
  logger.debug("SRV record for %s points to %s:%d", host, target, records[0].port)
  return Endpoint(target, records[0].port)

def lookup_endpoint(text: str, srv: bool = True, lifetime: float = 2.0) -> Endpoint:
  """
  Turn a user supplied server address into the endpoint to query.

  Like the game client, an address without an explicit port is first looked up
  as a `_minecraft._tcp` SRV record; without one, the default port is used.

  :param text: Server address, `host[:port]`
  :param srv: Whether to consult SRV records at all
  :param lifetime: Upper bound for the SRV lookup in seconds
  """
  host, port = split_address(text)
  if port is not None:
    return Endpoint(host, port)

  if srv and not _is_ip_literal(host):
    endpoint = lookup_srv(host, lifetime)
    if endpoint is not None:
      return endpoint

  return Endpoint(host, DEFAULT_PORT)

def resolve_endpoint(endpoint: Endpoint) -> List[Tuple[int, tuple]]:
  """
  Resolve an endpoint to the socket addresses to try, in the order returned by DNS.

  :return: list of `(address family, socket address)` tuples
  """
  try:
    infos = socket.getaddrinfo(endpoint.host, endpoint.port, type=socket.SOCK_STREAM)
  except (socket.gaierror, UnicodeError) as e:
    raise AddressError("could not resolve %s: %s" % (endpoint.host, e)) from e

  if not infos:
    raise AddressError("could not resolve %s: no addresses" % endpoint.host)

  return [(family, sockaddr) for family, _, _, _, sockaddr in infos]
