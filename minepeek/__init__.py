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
import base64
import binascii
import io
import json
import logging
import re
import socket
import struct
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from time import monotonic, perf_counter, time
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .address import DEFAULT_PORT, Endpoint, lookup_endpoint, parse_address, resolve_endpoint
from .errors import (AddressError, ConfigError, ConnStatus, MinePeekError, ProtocolError,
                     ServerConnectionError, ServerTimeoutError)

__version__ = "1.0.0"

__all__ = [
  "DEFAULT_PORT", "DEFAULT_TIMEOUT", "Endpoint", "parse_address", "lookup_endpoint", "resolve_endpoint",
  "ConnStatus", "MinePeekError", "AddressError", "ServerConnectionError", "ServerTimeoutError",
  "ProtocolError", "ConfigError",
  "pack_varint", "unpack_varint", "pack_string", "unpack_string", "pack_packet",
  "handshake_packet", "status_request_packet", "ping_packet",
  "PlainText", "Component", "Description", "parse_description", "strip_formatting",
  "PlayerSample", "StatusResponse", "ServerConnection", "query_status", "query_many",
]

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 2.0           # default deadline of a whole query, in seconds
PROTOCOL_VERSION = 0            # any version is accepted by the server for status queries
NEXT_STATE_STATUS = 1           # handshake "next state": 1 for status, 2 for login
MAX_PACKET_LENGTH = 2097151     # largest packet length a 3 byte varint can declare
MAX_VARINT_BYTES = 5            # a 32-bit value never needs more than 5 bytes
MAX_COMPONENT_DEPTH = 64        # deepest chat component nesting we follow

STATUS_PACKET_ID = 0x00
PING_PACKET_ID = 0x01

def pack_varint(data: int) -> bytes:
  """
  Pack an int as a varint (unsigned LEB128, 7 bits per byte, low-order group first).
  Negative values are packed as their 32-bit two's complement, like the protocol's VarInt.
  """
  if data > 0xFFFFFFFF or data < -0x80000000:
    raise ValueError("%d does not fit in a 32-bit varint" % data)
  data &= 0xFFFFFFFF
  ordinal = b''

  while True:
    byte = data & 0x7F
    data >>= 7
    ordinal += struct.pack('B', byte | (0x80 if data > 0 else 0))

    if data == 0:
      break

  return ordinal

def unpack_varint(stream) -> int:
  """
  Unpack a varint from a stream, which is anything with a `read(size)` method.

  Raises `ProtocolError` if the stream ends inside the varint, or if the varint
  continues past its 5th byte.
  """
  data = 0
  for i in range(MAX_VARINT_BYTES):
    ordinal = stream.read(1)

    if len(ordinal) == 0:
      raise ProtocolError("stream ended inside a varint")

    byte = ord(ordinal)
    data |= (byte & 0x7F) << 7 * i

    if not byte & 0x80:
      if data > 0xFFFFFFFF:
        raise ProtocolError("varint does not fit in 32 bits")
      return data

  raise ProtocolError("varint too long")

def pack_string(text: str) -> bytes:
  """Pack a string as its UTF-8 bytes, prefixed by their byte count as a varint."""
  raw = text.encode("utf8")
  return pack_varint(len(raw)) + raw

def unpack_string(stream) -> str:
  """Unpack a varint length-prefixed UTF-8 string from a stream."""
  length = unpack_varint(stream)
  raw = stream.read(length)

  if len(raw) < length:
    raise ProtocolError("string truncated: expected %d bytes, got %d" % (length, len(raw)))

  try:
    return raw.decode("utf8")
  except UnicodeDecodeError as e:
    raise ProtocolError("string is not valid UTF-8: %s" % e) from e

def pack_packet(packet_id: int, payload: bytes = b'') -> bytes:
  """Frame a packet: varint length of (packet ID + payload), packet ID, payload."""
  body = pack_varint(packet_id) + payload
  return pack_varint(len(body)) + body

def handshake_packet(host: str, port: int, protocol_version: int = PROTOCOL_VERSION) -> bytes:
  """
  Build the framed Handshake packet that switches the connection to the status state.

  See https://wiki.vg/Server_List_Ping#Handshake
  """
  # Protocol version, server address, server port, next state
  payload = pack_varint(protocol_version)
  payload += pack_string(host)
  payload += struct.pack(">H", port)
  payload += pack_varint(NEXT_STATE_STATUS)
  return pack_packet(STATUS_PACKET_ID, payload)

def status_request_packet() -> bytes:
  """The framed, empty Status Request packet (`01 00`)."""
  return pack_packet(STATUS_PACKET_ID)

def ping_packet(payload: int) -> bytes:
  """The framed Ping packet carrying a signed 64-bit payload the server echoes back."""
  return pack_packet(PING_PACKET_ID, struct.pack(">q", payload))

@dataclass(frozen=True)
class PlainText:
  """A description given as a plain string."""
  text: str

  def flatten(self) -> str:
    return self.text

@dataclass(frozen=True)
class Component:
  """
  A description given as a chat component: its own `text`, followed by the
  components in `extra`. Formatting (colors, bold, ...) is not kept.
  """
  text: str = ""
  extra: Tuple[Union[PlainText, "Component"], ...] = ()

  def flatten(self) -> str:
    return self.text + "".join(sub.flatten() for sub in self.extra)

Description = Union[PlainText, Component]

def parse_description(raw: Any, depth: int = 0) -> Description:
  """
  Turn the `description` value of a status document into a `Description`.
  Components nested deeper than `MAX_COMPONENT_DEPTH` are a `ProtocolError`.

  :param raw: The description, either a string or a dict (from "json.loads()")
  :param depth: Nesting level of `raw` inside the description
  """
  if depth > MAX_COMPONENT_DEPTH:
    raise ProtocolError("chat component nested deeper than %d levels" % MAX_COMPONENT_DEPTH)

  if isinstance(raw, str):
    return PlainText(raw)

  if isinstance(raw, dict):
    text = raw.get("text", "")
    if not isinstance(text, str):
      raise ProtocolError("chat component text must be a string, not %s" % type(text).__name__)

    extra = raw.get("extra") or []
    if not isinstance(extra, list):
      raise ProtocolError("chat component extra must be a list, not %s" % type(extra).__name__)

    return Component(text, tuple(parse_description(sub, depth + 1) for sub in extra))

  raise ProtocolError("unrecognized description of type %s" % type(raw).__name__)

def strip_formatting(text: str) -> str:
  """Strip the legacy `§` formatting codes from a MOTD."""
  return re.sub(r"§.?", "", text)

def _player_count(players: Dict[str, Any], key: str) -> int:
  value = players.get(key)
  # bool is an int subclass, but not a player count
  if not isinstance(value, int) or isinstance(value, bool) or value < 0:
    raise ProtocolError("status document has no valid players.%s (got %r)" % (key, value))
  return value

@dataclass(frozen=True)
class PlayerSample:
  """One entry of the (usually partial) list of online players."""
  name: str
  id: str = ""

@dataclass(frozen=True)
class StatusResponse:
  """The parsed status document of a server."""

  current_players: int
  """current number of players online, may exceed `max_players`"""
  max_players: int
  """maximum player capacity"""
  description: Description = PlainText("")
  """message of the day"""
  version: Optional[str] = None
  """server version name"""
  protocol: Optional[int] = None
  """server protocol version number"""
  sample: Tuple[PlayerSample, ...] = ()
  """sample of online players"""
  favicon_b64: Optional[str] = None
  """base64-encoded favicon data URI"""
  raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)
  """the whole decoded status document"""

  @property
  def motd(self) -> str:
    """message of the day, flattened to plain text (legacy formatting codes kept)"""
    return self.description.flatten()

  @property
  def stripped_motd(self) -> str:
    """message of the day, stripped of all formatting ("human-readable")"""
    return strip_formatting(self.motd)

  @property
  def favicon(self) -> Optional[bytes]:
    """decoded favicon (PNG) data, if the server sent one"""
    if not self.favicon_b64:
      return None
    try:
      return base64.b64decode(self.favicon_b64.split("base64,")[-1], validate=True)
    except binascii.Error as e:
      raise ProtocolError("favicon is not valid base64: %s" % e) from e

  @classmethod
  def from_json(cls, document: str) -> "StatusResponse":
    """
    Decode the JSON status document.

    Only `players.online` and `players.max` are required. The optional fields
    are kept when they have the expected type and ignored otherwise, except
    `description`, which must be a string or a chat component when present.
    """
    try:
      payload = json.loads(document)
    except (ValueError, RecursionError) as e:
      raise ProtocolError("status document is not valid JSON: %s" % e) from e

    if not isinstance(payload, dict):
      raise ProtocolError("status document is not a JSON object")

    players = payload.get("players")
    if not isinstance(players, dict):
      raise ProtocolError("status document has no players object")

    current_players = _player_count(players, "online")
    max_players = _player_count(players, "max")

    # The motd might be a string directly, not a json object
    description: Description = PlainText("")
    if "description" in payload:
      description = parse_description(payload["description"])

    version_name = None
    protocol = None
    version = payload.get("version")
    if isinstance(version, dict):
      if isinstance(version.get("name"), str):
        version_name = version["name"]
      if isinstance(version.get("protocol"), int):
        protocol = version["protocol"]

    sample = []
    raw_sample = players.get("sample")
    for player in raw_sample if isinstance(raw_sample, list) else []:
      if isinstance(player, dict) and isinstance(player.get("name"), str):
        sample.append(PlayerSample(player["name"], str(player.get("id", ""))))

    favicon_b64 = payload.get("favicon")
    if not isinstance(favicon_b64, str):
      favicon_b64 = None

    return cls(current_players, max_players, description, version_name, protocol,
               tuple(sample), favicon_b64, payload)

class ServerConnection:
  """
  One connection to a server, in the status state.

  The connection is a context manager; the socket is closed when the block is left,
  whether the query succeeded or not:

      with ServerConnection(Endpoint("example.org")) as conn:
        status = conn.status()
        latency = conn.ping()

  A single deadline, `timeout` seconds after `connect()`, bounds everything done on
  the connection. Every socket operation only gets the time that is left.
  """

  def __init__(self, endpoint: Endpoint, timeout: float = DEFAULT_TIMEOUT, sock: Optional[socket.socket] = None) -> None:
    self.endpoint: Endpoint = endpoint
    """server to query"""
    self.timeout: float = timeout
    """deadline of the whole conversation, in seconds"""
    self.latency: Optional[int] = None
    """ping time to server in milliseconds, set by `ping()`"""
    self._sock: Optional[socket.socket] = sock
    self._deadline: Optional[float] = None

  def __enter__(self) -> "ServerConnection":
    self.connect()
    return self

  def __exit__(self, *exc_info) -> None:
    self.close()

  def _remaining(self) -> float:
    """Seconds left until the deadline. Raises `ServerTimeoutError` once it has passed."""
    if self._deadline is None:
      raise RuntimeError("connection is not open")
    remaining = self._deadline - monotonic()
    if remaining <= 0:
      raise ServerTimeoutError("query to %s timed out after %ss" % (self.endpoint, self.timeout))
    return remaining

  def connect(self) -> None:
    """
    Start the deadline and open the connection, trying every address the host resolves to.
    A socket passed to the constructor is used as is.
    """
    self._deadline = monotonic() + self.timeout
    if self._sock is not None:
      return

    addresses = resolve_endpoint(self.endpoint)
    last_error: Optional[OSError] = None

    for family, sockaddr in addresses:
      remaining = self._remaining()
      sock = socket.socket(family, socket.SOCK_STREAM)
      sock.settimeout(remaining)

      try:
        start_time = perf_counter()
        sock.connect(sockaddr)
        logger.debug("Connected to %s (%s) in %dms", self.endpoint, sockaddr[0],
                     round((perf_counter() - start_time) * 1000))
      except socket.timeout as e:
        sock.close()
        raise ServerTimeoutError("connecting to %s timed out after %ss" % (self.endpoint, self.timeout)) from e
      except OSError as e:
        sock.close()
        logger.debug("Could not connect to %s (%s): %s", self.endpoint, sockaddr[0], e)
        last_error = e
        continue

      self._sock = sock
      return

    raise ServerConnectionError("could not connect to %s: %s" % (self.endpoint, last_error)) from last_error

  def close(self) -> None:
    if self._sock is not None:
      self._sock.close()
      self._sock = None

  def _socket(self) -> socket.socket:
    if self._sock is None:
      raise RuntimeError("connection is not open")
    return self._sock

  def send(self, data: bytes) -> None:
    sock = self._socket()
    sock.settimeout(self._remaining())
    try:
      sock.sendall(data)
    except socket.timeout as e:
      raise ServerTimeoutError("sending to %s timed out" % self.endpoint) from e
    except (ConnectionResetError, ConnectionAbortedError, BrokenPipeError) as e:
      raise ProtocolError("%s closed the connection: %s" % (self.endpoint, e)) from e
    except OSError as e:
      raise ServerConnectionError("sending to %s failed: %s" % (self.endpoint, e)) from e

  def read(self, size: int) -> bytearray:
    """
    Receive exactly `size` bytes. Works around the problems of `socket.recv`,
    which may return less than asked for.
    Raises `ProtocolError` if the connection was closed while waiting for data.
    """
    sock = self._socket()
    data = bytearray()

    while len(data) < size:
      sock.settimeout(self._remaining())
      try:
        temp_data = sock.recv(size - len(data))
      except socket.timeout as e:
        raise ServerTimeoutError("reading from %s timed out after %ss" % (self.endpoint, self.timeout)) from e
      except (ConnectionResetError, ConnectionAbortedError) as e:
        raise ProtocolError("%s closed the connection: %s" % (self.endpoint, e)) from e
      except OSError as e:
        raise ServerConnectionError("reading from %s failed: %s" % (self.endpoint, e)) from e

      # If the connection was closed, `sock.recv` returns an empty string
      if not temp_data:
        raise ProtocolError("connection closed after %d of %d bytes" % (len(data), size))

      data += temp_data

    return data

  def read_packet(self) -> Tuple[int, io.BytesIO]:
    """Read one framed packet and return its packet ID and the rest of its body."""
    packet_len = unpack_varint(self)

    if packet_len < 1 or packet_len > MAX_PACKET_LENGTH:
      raise ProtocolError("invalid packet length %d" % packet_len)

    logger.debug("Reading %d byte packet from %s", packet_len, self.endpoint)
    body = io.BytesIO(self.read(packet_len))
    packet_id = unpack_varint(body)
    return packet_id, body

  def status(self) -> StatusResponse:
    """
    Query the server status with the SLP protocol of Minecraft Java >= 1.7.

    See https://wiki.vg/Server_List_Ping#Current
    """
    self.send(handshake_packet(self.endpoint.host, self.endpoint.port))
    self.send(status_request_packet())

    packet_id, body = self.read_packet()

    # Anything else than a status response (e.g. a disconnect) is not something we can show
    if packet_id != STATUS_PACKET_ID:
      raise ProtocolError("unexpected packet ID 0x%02x in status response" % packet_id)

    document = unpack_string(body)
    return StatusResponse.from_json(document)

  def ping(self, payload: Optional[int] = None) -> int:
    """
    Send a Ping packet after the status query and wait for the Pong echoing its payload.

    :param payload: Signed 64-bit value to send, the current unix timestamp in ms by default
    :return: round trip time in milliseconds
    """
    if payload is None:
      payload = int(time() * 1000)

    start_time = perf_counter()
    self.send(ping_packet(payload))
    packet_id, body = self.read_packet()

    if packet_id != PING_PACKET_ID:
      raise ProtocolError("unexpected packet ID 0x%02x in pong response" % packet_id)

    raw = body.read(8)
    if len(raw) < 8 or struct.unpack(">q", raw)[0] != payload:
      raise ProtocolError("pong payload does not match ping")

    self.latency = round((perf_counter() - start_time) * 1000)
    return self.latency

def query_status(endpoint: Union[Endpoint, str], timeout: float = DEFAULT_TIMEOUT) -> StatusResponse:
  """
  Query the status of a server once: connect, handshake, read the status, close.

  :param endpoint: Server to query, or a `host[:port]` string
  :param timeout: Deadline of the whole query in seconds
  """
  if isinstance(endpoint, str):
    endpoint = parse_address(endpoint)

  with ServerConnection(endpoint, timeout) as conn:
    return conn.status()

def _lookup_and_query(target: Union[Endpoint, str], timeout: float, srv: bool) -> StatusResponse:
  if isinstance(target, str):
    target = lookup_endpoint(target, srv=srv, lifetime=timeout)
  return query_status(target, timeout)

def query_many(endpoints: Sequence[Union[Endpoint, str]], timeout: float = DEFAULT_TIMEOUT,
               max_workers: int = 8, srv: bool = True) -> List[Union[StatusResponse, MinePeekError]]:
  """
  Query several servers in parallel, one connection each.

  Address strings are looked up (SRV records included, unless `srv` is off) by
  the worker that queries them, so slow lookups overlap as well.

  :return: for each endpoint, in the same order, its status or the error its query raised
  """
  if not endpoints:
    return []

  results: List[Union[StatusResponse, MinePeekError]] = []
  with ThreadPoolExecutor(max_workers=min(max_workers, len(endpoints))) as executor:
    futures = [executor.submit(_lookup_and_query, endpoint, timeout, srv) for endpoint in endpoints]
    for endpoint, future in zip(endpoints, futures):
      try:
        results.append(future.result())
      except MinePeekError as e:
        logger.debug("Query to %s failed: %s", endpoint, e)
        results.append(e)

  return results
