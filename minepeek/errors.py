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
from enum import Enum

class ConnStatus(Enum):
  """
Contains possible outcomes of a status query.

- `SUCCESS`: The SLP query succeeded (request & response parsing OK)
- `CONNFAIL`: The socket to the server could not be established. Server offline, wrong hostname or port?
- `TIMEOUT`: The query did not finish before its deadline. (Server under too much load? Firewall rules OK?)
- `UNKNOWN`: The connection was established, but the server answered with something we could not parse.
- `BADADDRESS`: The server address was malformed or could not be resolved.
- `BADCONFIG`: The servers file could not be found, read or parsed.
  """

  def __str__(self) -> str:
    return str(self.name)

  SUCCESS = 0
  """The SLP query succeeded (request & response parsing OK)"""

  CONNFAIL = -1
  """The socket to the server could not be established. (Server offline, wrong hostname or port?)"""

  TIMEOUT = -2
  """The query did not finish before its deadline. (Server under too much load? Firewall rules OK?)"""

  UNKNOWN = -3
  """The connection was established, but the server answered with something we could not parse."""

  BADADDRESS = -4
  """The server address was malformed or could not be resolved."""

  BADCONFIG = -5
  """The servers file could not be found, read or parsed."""

class MinePeekError(Exception):
  """Base class of every error raised by minepeek."""
  status = ConnStatus.UNKNOWN

class AddressError(MinePeekError, ValueError):
  """Malformed `host[:port]` string or a host name that does not resolve."""
  status = ConnStatus.BADADDRESS

class ServerConnectionError(MinePeekError, ConnectionError):
  """The server refused the connection or could not be reached."""
  status = ConnStatus.CONNFAIL

class ServerTimeoutError(MinePeekError, TimeoutError):
  """The query deadline passed before the server answered."""
  status = ConnStatus.TIMEOUT

class ProtocolError(MinePeekError):
  """
  The server spoke, but not the Server List Ping protocol we expect:
  bad framing, unexpected packet ID, varint overflow or an undecodable status document.
  """
  status = ConnStatus.UNKNOWN

class ConfigError(MinePeekError):
  """The servers file (`servers.dat`) is missing, unreadable or malformed."""
  status = ConnStatus.BADCONFIG
