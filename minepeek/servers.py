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
import gzip
import io
import logging
import os
import platform
import struct
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from .address import Endpoint, parse_address
from .errors import AddressError, ConfigError

logger = logging.getLogger(__name__)

SERVERS_FILE = "servers.dat"
MAX_NBT_DEPTH = 512

# NBT tag types, see https://wiki.vg/NBT
TAG_END = 0
TAG_BYTE = 1
TAG_SHORT = 2
TAG_INT = 3
TAG_LONG = 4
TAG_FLOAT = 5
TAG_DOUBLE = 6
TAG_BYTE_ARRAY = 7
TAG_STRING = 8
TAG_LIST = 9
TAG_COMPOUND = 10
TAG_INT_ARRAY = 11
TAG_LONG_ARRAY = 12

# struct formats of the fixed size tags (big-endian)
_SCALARS = {
  TAG_BYTE: ">b",
  TAG_SHORT: ">h",
  TAG_INT: ">i",
  TAG_LONG: ">q",
  TAG_FLOAT: ">f",
  TAG_DOUBLE: ">d",
}

_ARRAYS = {
  TAG_INT_ARRAY: "i",
  TAG_LONG_ARRAY: "q",
}

def _read(stream: io.BytesIO, size: int) -> bytes:
  data = stream.read(size)
  if len(data) < size:
    raise ConfigError("NBT data truncated: expected %d bytes, got %d" % (size, len(data)))
  return data

def _unpack(stream: io.BytesIO, fmt: str) -> Any:
  return struct.unpack(fmt, _read(stream, struct.calcsize(fmt)))[0]

def _decode_mutf8(raw: bytes) -> str:
  """Decode Java's modified UTF-8 (encoded NUL, surrogate pairs as two 3-byte sequences)."""
  raw = raw.replace(b"\xc0\x80", b"\x00")
  try:
    text = raw.decode("utf8", "surrogatepass")
    return text.encode("utf-16-le", "surrogatepass").decode("utf-16-le")
  except UnicodeError as e:
    raise ConfigError("NBT string is not valid modified UTF-8: %s" % e) from e

def _read_string(stream: io.BytesIO) -> str:
  length = _unpack(stream, ">H")
  return _decode_mutf8(_read(stream, length))

def _read_payload(stream: io.BytesIO, tag: int, depth: int = 0) -> Any:
  if depth > MAX_NBT_DEPTH:
    raise ConfigError("NBT data nested too deeply")

  if tag in _SCALARS:
    return _unpack(stream, _SCALARS[tag])

  if tag == TAG_STRING:
    return _read_string(stream)

  if tag == TAG_BYTE_ARRAY:
    length = _unpack(stream, ">i")
    if length < 0:
      raise ConfigError("negative NBT array length")
    return _read(stream, length)

  if tag in _ARRAYS:
    length = _unpack(stream, ">i")
    if length < 0:
      raise ConfigError("negative NBT array length")
    fmt = ">%d%s" % (length, _ARRAYS[tag])
    return list(struct.unpack(fmt, _read(stream, struct.calcsize(fmt))))

  if tag == TAG_LIST:
    item_tag = _unpack(stream, ">b")
    length = _unpack(stream, ">i")
    if length <= 0:
      return []
    if item_tag == TAG_END:
      raise ConfigError("non-empty NBT list of end tags")
    items = []
    for _ in range(length):
      items.append(_read_payload(stream, item_tag, depth + 1))
    return items

  if tag == TAG_COMPOUND:
    compound: Dict[str, Any] = {}
    while True:
      item_tag = _unpack(stream, ">b")
      if item_tag == TAG_END:
        return compound
      name = _read_string(stream)
      compound[name] = _read_payload(stream, item_tag, depth + 1)

  raise ConfigError("unknown NBT tag type %d" % tag)

def read_nbt(data: bytes) -> Tuple[str, Dict[str, Any]]:
  """
  Parse a (possibly gzip-compressed) NBT document into plain Python values:
  compounds become dicts, lists and int/long arrays become lists, byte arrays bytes.

  :param data: The raw file contents
  :return: name and contents of the root compound
  """
  if data[:2] == b"\x1f\x8b":
    try:
      data = gzip.decompress(data)
    except (OSError, EOFError, zlib.error) as e:
      raise ConfigError("corrupt gzip-compressed NBT data: %s" % e) from e

  stream = io.BytesIO(data)
  root_tag = _unpack(stream, ">b")
  if root_tag != TAG_COMPOUND:
    raise ConfigError("NBT root tag is not a compound (type %d)" % root_tag)

  name = _read_string(stream)
  return name, _read_payload(stream, TAG_COMPOUND)

@dataclass(frozen=True)
class ServerEntry:
  """A server saved in the multiplayer server list."""
  label: str
  address: str

  @property
  def endpoint(self) -> Endpoint:
    return parse_address(self.address)

  def __str__(self) -> str:
    return "%s (address: %s)" % (self.label, self.address)

def load_servers(path: Union[str, Path]) -> List[ServerEntry]:
  """
  Load the saved server list from a `servers.dat` file, in the order the game shows it.

  Raises `ConfigError` if the file is missing, unreadable or malformed, or if
  an entry has no usable address.
  """
  path = Path(path)
  try:
    data = path.read_bytes()
  except OSError as e:
    raise ConfigError("could not open servers file at %s: %s" % (path, e)) from e

  _, root = read_nbt(data)

  servers = root.get("servers")
  if not isinstance(servers, list):
    raise ConfigError("%s has no server list" % path)

  entries = []
  for index, server in enumerate(servers):
    if not isinstance(server, dict):
      raise ConfigError("server #%d in %s is not a compound" % (index, path))

    address = server.get("ip")
    if not isinstance(address, str):
      raise ConfigError("server #%d in %s has no address" % (index, path))

    try:
      parse_address(address)
    except AddressError as e:
      raise ConfigError("server #%d in %s: %s" % (index, path, e)) from e

    label = server.get("name")
    if not isinstance(label, str) or not label:
      label = address

    entries.append(ServerEntry(label, address.strip()))

  logger.debug("Loaded %d servers from %s", len(entries), path)
  return entries

def default_minecraft_dir(system: str, home: Path, appdata: Optional[Path] = None) -> Path:
  """
  Where the game keeps its data on a given operating system.

  :param system: Operating system name, as returned by `platform.system()`
  :param home: The user's home directory
  :param appdata: Windows only: the roaming application data folder (`%APPDATA%`)
  """
  if system == "Windows":
    base = Path(appdata) if appdata else Path(home) / "AppData" / "Roaming"
    return base / ".minecraft"
  if system == "Darwin":
    return Path(home) / "Library" / "Application Support" / "minecraft"
  return Path(home) / ".minecraft"

def find_minecraft_dir() -> Path:
  """The data directory of the game on this machine. Raises `ConfigError` if there is none."""
  appdata = os.environ.get("APPDATA")
  path = default_minecraft_dir(platform.system(), Path.home(), Path(appdata) if appdata else None)
  if not path.is_dir():
    raise ConfigError("Couldn't resolve .minecraft directory (looked for %s), please check that "
                      "it exists or pass the path explicitly with --instance." % path)
  return path

def locate_servers_file(instance: Optional[Path] = None, servers_file: Optional[Path] = None) -> Path:
  """
  Path of the servers file to read: `servers_file` itself, or `servers.dat` in the
  game directory `instance`, or in the default game directory.
  """
  if servers_file is not None:
    return Path(servers_file)
  if instance is None:
    instance = find_minecraft_dir()
  return Path(instance) / SERVERS_FILE
