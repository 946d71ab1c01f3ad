import socket
import struct
import time
from types import SimpleNamespace

import dns.resolver
import pytest

from minepeek import (AddressError, Endpoint, ProtocolError, ServerConnection, ServerConnectionError,
                      ServerTimeoutError, StatusResponse, handshake_packet, pack_packet, pack_string, pack_varint,
                      query_many, query_status, status_request_packet)

from .conftest import FakeSocket, split_randomly, status_handler

DOCUMENT = '{"players":{"online":3,"max":20},"description":"A Minecraft Server"}'

def test_end_to_end_status(mock_server):
  server = mock_server(status_handler(DOCUMENT, pong=False))

  status = query_status(server.endpoint, timeout=5)

  assert status.current_players == 3
  assert status.max_players == 20
  assert status.motd == "A Minecraft Server"
  assert server.handshake == {
    "packet_id": 0x00,
    "protocol_version": 0,
    "host": "127.0.0.1",
    "port": server.endpoint.port,
    "next_state": 1,
    "rest": b"",
  }
  assert server.requests == [(0x00, b"")]
  assert server.client_closed.wait(5)
  assert not server.errors

def test_query_status_accepts_address_string(mock_server):
  server = mock_server(status_handler(DOCUMENT, pong=False))
  status = query_status("127.0.0.1:%d" % server.endpoint.port, timeout=5)
  assert status.current_players == 3

def test_response_in_small_chunks(mock_server):
  server = mock_server(status_handler(DOCUMENT, chunk_size=3, pong=False))
  assert query_status(server.endpoint, timeout=5).max_players == 20

@pytest.mark.parametrize("chunk_size", [1, 2, 3, 7, 64, 10000])
def test_short_reads_fixed_chunks(chunk_size):
  response = pack_packet(0x00, pack_string(DOCUMENT))
  sock = FakeSocket([response[i:i + chunk_size] for i in range(0, len(response), chunk_size)])

  with ServerConnection(Endpoint("mc.example.org"), timeout=5, sock=sock) as conn:
    status = conn.status()

  assert status.current_players == 3
  assert bytes(sock.sent) == handshake_packet("mc.example.org", 25565) + status_request_packet()
  assert sock.closed

@pytest.mark.parametrize("seed", range(20))
def test_short_reads_random_chunks(seed):
  document = '{"players":{"online":1,"max":2},"description":"%s"}' % ("x" * 400)
  response = pack_packet(0x00, pack_string(document))
  sock = FakeSocket(split_randomly(response, seed))

  with ServerConnection(Endpoint("localhost"), timeout=5, sock=sock) as conn:
    status = conn.status()

  assert status.motd == "x" * 400

def test_every_socket_operation_gets_remaining_time():
  sock = FakeSocket([pack_packet(0x00, pack_string(DOCUMENT))])
  with ServerConnection(Endpoint("localhost"), timeout=5, sock=sock) as conn:
    conn.status()
  assert sock.timeouts
  assert all(0 < timeout <= 5 for timeout in sock.timeouts)

def test_unexpected_packet_id(mock_server):
  server = mock_server(status_handler(DOCUMENT, pong=False, packet_id=0x01))
  with pytest.raises(ProtocolError, match="unexpected packet ID"):
    query_status(server.endpoint, timeout=5)
  assert server.client_closed.wait(5)

def test_malformed_json_closes_connection(mock_server):
  server = mock_server(status_handler("not json", pong=False))
  with pytest.raises(ProtocolError):
    query_status(server.endpoint, timeout=5)
  assert server.client_closed.wait(5)

def test_stream_closed_early():
  response = pack_packet(0x00, pack_string(DOCUMENT))
  sock = FakeSocket([response[:20]])
  with pytest.raises(ProtocolError, match="connection closed"):
    with ServerConnection(Endpoint("localhost"), timeout=5, sock=sock) as conn:
      conn.status()
  assert sock.closed

def test_server_closes_without_answer(mock_server):
  def handle(conn, stream, server):
    server.read_status_request(stream)

  server = mock_server(handle)
  with pytest.raises(ProtocolError):
    query_status(server.endpoint, timeout=5)

@pytest.mark.parametrize("response", [
  b"\x00",
  pack_varint(3000000) + b"\x00",
  b"\x80\x80\x80\x80\x80\x80",
])
def test_invalid_packet_length(response):
  with pytest.raises(ProtocolError):
    with ServerConnection(Endpoint("localhost"), timeout=5, sock=FakeSocket([response])) as conn:
      conn.status()

def test_string_longer_than_packet():
  body = b"\x00" + pack_varint(100) + b"{}"
  with pytest.raises(ProtocolError, match="truncated"):
    with ServerConnection(Endpoint("localhost"), timeout=5, sock=FakeSocket([pack_varint(len(body)) + body])) as conn:
      conn.status()

def test_silent_server_times_out(mock_server):
  def handle(conn, stream, server):
    server.wait_for_close(stream)

  server = mock_server(handle)
  start = time.monotonic()
  with pytest.raises(ServerTimeoutError) as excinfo:
    query_status(server.endpoint, timeout=0.5)
  elapsed = time.monotonic() - start

  assert 0.4 < elapsed < 3
  assert isinstance(excinfo.value, TimeoutError)
  assert not isinstance(excinfo.value, ConnectionError)
  assert server.client_closed.wait(5)

def test_connection_refused(closed_port):
  with pytest.raises(ServerConnectionError) as excinfo:
    query_status(Endpoint("127.0.0.1", closed_port), timeout=5)
  assert isinstance(excinfo.value, ConnectionError)
  assert not isinstance(excinfo.value, TimeoutError)

def test_unresolvable_host(monkeypatch):
  def getaddrinfo(*args, **kwargs):
    raise socket.gaierror(socket.EAI_NONAME, "Name or service not known")

  monkeypatch.setattr(socket, "getaddrinfo", getaddrinfo)
  with pytest.raises(AddressError):
    query_status(Endpoint("does-not-exist.invalid"), timeout=5)

def test_ping(mock_server):
  server = mock_server(status_handler(DOCUMENT))

  with ServerConnection(server.endpoint, timeout=5) as conn:
    status = conn.status()
    latency = conn.ping(0x8008135)

  assert status.current_players == 3
  assert latency >= 0
  assert conn.latency == latency
  assert server.requests[-1] == (0x01, b"\x01" + struct.pack(">q", 0x8008135))

def test_pong_payload_mismatch():
  sock = FakeSocket([
    pack_packet(0x00, pack_string(DOCUMENT)),
    pack_packet(0x01, struct.pack(">q", 2)),
  ])
  with ServerConnection(Endpoint("localhost"), timeout=5, sock=sock) as conn:
    conn.status()
    with pytest.raises(ProtocolError, match="pong"):
      conn.ping(1)

def test_query_many(mock_server, closed_port):
  first = mock_server(status_handler(DOCUMENT, pong=False))
  second = mock_server(status_handler('{"players":{"online":7,"max":8}}', pong=False))
  endpoints = [first.endpoint, Endpoint("127.0.0.1", closed_port), second.endpoint]

  results = query_many(endpoints, timeout=5)

  assert isinstance(results[0], StatusResponse)
  assert results[0].current_players == 3
  assert isinstance(results[1], ServerConnectionError)
  assert isinstance(results[2], StatusResponse)
  assert results[2].current_players == 7

def test_query_many_empty():
  assert query_many([]) == []

def test_query_many_keeps_going_after_odd_sample(mock_server):
  odd = mock_server(status_handler('{"players":{"online":1,"max":1,"sample":5}}', pong=False))
  normal = mock_server(status_handler(DOCUMENT, pong=False))

  results = query_many([odd.endpoint, normal.endpoint], timeout=5)

  assert [result.current_players for result in results] == [1, 3]
  assert results[0].sample == ()

def test_query_many_looks_up_addresses_in_parallel(mock_server, monkeypatch):
  servers = [mock_server(status_handler(DOCUMENT, pong=False)) for _ in range(4)]
  ports = {"server%d.example.org" % i: server.endpoint.port for i, server in enumerate(servers)}

  def resolve(qname, rdtype, lifetime=None):
    time.sleep(0.5)
    host = qname[len("_minecraft._tcp."):]
    return [SimpleNamespace(target="127.0.0.1.", port=ports[host], priority=0, weight=0)]

  monkeypatch.setattr(dns.resolver, "resolve", resolve)
  start = time.monotonic()
  results = query_many(sorted(ports), timeout=5)
  elapsed = time.monotonic() - start

  assert all(isinstance(result, StatusResponse) for result in results)
  assert elapsed < 1.5

def test_query_many_address_errors_are_results():
  results = query_many(["example.org:notaport"], timeout=5)
  assert isinstance(results[0], AddressError)
