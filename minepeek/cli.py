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
import argparse
import logging
import sys
import textwrap
from pathlib import Path
from typing import List, Optional, Sequence, TextIO, Union

from . import DEFAULT_TIMEOUT, ServerConnection, StatusResponse, __version__, query_many
from .address import lookup_endpoint
from .errors import ConfigError, ConnStatus, MinePeekError
from .servers import ServerEntry, load_servers, locate_servers_file

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
WRAP_WIDTH = 60
EXIT_INTERRUPTED = 130

EXIT_CODES = {
  ConnStatus.SUCCESS: 0,
  ConnStatus.CONNFAIL: 3,
  ConnStatus.TIMEOUT: 4,
  ConnStatus.UNKNOWN: 5,
  ConnStatus.BADADDRESS: 6,
  ConnStatus.BADCONFIG: 7,
}

MESSAGES = {
  ConnStatus.CONNFAIL: "Could not connect to the server",
  ConnStatus.TIMEOUT: "The server did not answer in time",
  ConnStatus.UNKNOWN: "The server sent a response that could not be understood",
  ConnStatus.BADADDRESS: "Invalid server address",
  ConnStatus.BADCONFIG: "Could not load the server list",
}

def _positive_float(value: str) -> float:
  try:
    number = float(value)
  except ValueError:
    raise argparse.ArgumentTypeError("%r is not a number" % value)
  if not number > 0:
    raise argparse.ArgumentTypeError("must be greater than 0")
  return number

def build_parser() -> argparse.ArgumentParser:
  parser = argparse.ArgumentParser(prog="minepeek", description="Show how many players are online on a Minecraft server.")
  choice = parser.add_mutually_exclusive_group()
  choice.add_argument("-i", "--instance", type=Path,
                      help="Path to the folder for your minecraft instance [default: the standard .minecraft folder]")
  choice.add_argument("-s", "--server", help="IP/domain of the minecraft server to query")
  choice.add_argument("-f", "--servers-file", type=Path,
                      help="Path to the servers.dat file you want to choose a server from")
  parser.add_argument("-t", "--timeout", type=_positive_float, default=DEFAULT_TIMEOUT,
                      help="Connection timeout in seconds [default: %(default)s]")
  parser.add_argument("--no-srv", dest="srv", action="store_false",
                      help="Don't look up _minecraft._tcp SRV records for addresses without a port")
  parser.add_argument("--no-ping", dest="ping", action="store_false",
                      help="Don't measure the latency after the status query")
  parser.add_argument("--probe", action="store_true",
                      help="Query every saved server before asking which one")
  parser.add_argument("-v", "--verbose", action="count", default=0,
                      help="Log more details to stderr (repeat for debug output)")
  parser.add_argument("--version", action="version", version="%(prog)s " + __version__)
  return parser

def setup_logging(verbosity: int) -> None:
  level = logging.WARNING
  if verbosity == 1:
    level = logging.INFO
  elif verbosity > 1:
    level = logging.DEBUG
  logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)

def format_status(status: StatusResponse, latency: Optional[int] = None, width: int = WRAP_WIDTH) -> str:
  """
  Human-readable rendition of a status: player counts, the online players the server
  chose to list, and the MOTD without formatting codes.
  """
  players = [player.name for player in status.sample]

  header = "%d/%d online" % (status.current_players, status.max_players)
  if latency is not None:
    header += " (%d ms)" % latency
  if players:
    header += ":"

  lines = [header]
  if players:
    lines += textwrap.wrap(" ".join(players), width=width, initial_indent="    ", subsequent_indent="    ")

  lines += [line.strip() for line in status.stripped_motd.splitlines() if line.strip()]
  return "\n".join(lines)

def format_probe(entry: ServerEntry, result: Union[StatusResponse, MinePeekError]) -> str:
  if isinstance(result, StatusResponse):
    return "%s - %d/%d online" % (entry, result.current_players, result.max_players)
  return "%s - %s" % (entry, MESSAGES.get(result.status, "query failed").lower())

def probe_servers(entries: Sequence[ServerEntry], timeout: float, srv: bool = True) -> List[str]:
  """Query all saved servers in parallel and return a picker line for each."""
  results = query_many([entry.address for entry in entries], timeout, srv=srv)
  return [format_probe(entry, result) for entry, result in zip(entries, results)]

def pick_server(entries: Sequence[ServerEntry], lines: Optional[Sequence[str]] = None,
                stdin: Optional[TextIO] = None, out: Optional[TextIO] = None) -> ServerEntry:
  """
  Ask which of the saved servers to query. An empty answer picks the first one.
  Raises `EOFError` if the input ends before a valid choice was made.
  """
  if not entries:
    raise ConfigError("the server list is empty")

  stdin = stdin or sys.stdin
  out = out or sys.stderr
  lines = lines or [str(entry) for entry in entries]

  for number, line in enumerate(lines, 1):
    print("  %d) %s" % (number, line), file=out)

  while True:
    out.write("Which server? [1]: ")
    out.flush()
    answer = stdin.readline()
    if not answer:
      raise EOFError

    answer = answer.strip()
    if not answer:
      return entries[0]
    if answer.isdigit() and 1 <= int(answer) <= len(entries):
      return entries[int(answer) - 1]

    print("Please enter a number between 1 and %d." % len(entries), file=out)

def main(argv: Optional[Sequence[str]] = None) -> int:
  args = build_parser().parse_args(argv)
  setup_logging(args.verbose)

  try:
    if args.server is not None:
      address = args.server
    else:
      path = locate_servers_file(args.instance, args.servers_file)
      entries = load_servers(path)
      lines = probe_servers(entries, args.timeout, args.srv) if args.probe else None
      address = pick_server(entries, lines).address

    endpoint = lookup_endpoint(address, srv=args.srv, lifetime=args.timeout)
    logger.info("Querying %s", endpoint)

    latency = None
    with ServerConnection(endpoint, args.timeout) as conn:
      status = conn.status()
      if args.ping:
        try:
          latency = conn.ping()
        except MinePeekError as e:
          logger.warning("Status received, but ping to %s failed: %s", endpoint, e)

  except (KeyboardInterrupt, EOFError):
    print(file=sys.stderr)
    return EXIT_INTERRUPTED
  except MinePeekError as e:
    print("%s: %s" % (MESSAGES.get(e.status, "Error"), e), file=sys.stderr)
    return EXIT_CODES.get(e.status, 1)

  print(format_status(status, latency))
  return EXIT_CODES[ConnStatus.SUCCESS]
