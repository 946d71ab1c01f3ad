import io
import random
import socket
import struct
import threading

import pytest

from minepeek import Endpoint, pack_packet, pack_string, unpack_string, unpack_varint

class MockServer:
  """
  A one-shot TCP server on the loopback interface. The handler gets the accepted
  connection (as a socket and a buffered reader) and this object to record what it saw.
  """

  def __init__(self, handler):
    self.handler = handler
    self.handshake = None
    self.requests = []
    self.errors = []
    self.client_closed = threading.Event()
    self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    self.sock.bind(("127.0.0.1", 0))
    self.sock.listen(1)
    self.sock.settimeout(10)
    self.endpoint = Endpoint("127.0.0.1", self.sock.getsockname()[1])
    self.thread = threading.Thread(target=self._serve, daemon=True)
    self.thread.start()

  def _serve(self):
    try:
      conn, _ = self.sock.accept()
    except OSError:
      return
    conn.settimeout(10)
    with conn, conn.makefile("rb") as stream:
      try:
        self.handler(conn, stream, self)
      except Exception as e:
        self.errors.append(e)

  def read_packet(self, stream):
    length = unpack_varint(stream)
    body = io.BytesIO(stream.read(length))
    return unpack_varint(body), body

  def read_status_request(self, stream):
    """Read and record the handshake and the status request."""
    packet_id, body = self.read_packet(stream)
    self.handshake = {
      "packet_id": packet_id,
      "protocol_version": unpack_varint(body),
      "host": unpack_string(body),
      "port": struct.unpack(">H", body.read(2))[0],
      "next_state": unpack_varint(body),
      "rest": body.read(),
    }
    packet_id, body = self.read_packet(stream)
    self.requests.append((packet_id, body.read()))

  def wait_for_close(self, stream):
    while stream.read(1):
      pass
    self.client_closed.set()

  def close(self):
    self.sock.close()

@pytest.fixture
def mock_server():
  servers = []

  def start(handler):
    server = MockServer(handler)
    servers.append(server)
    return server

  yield start

  for server in servers:
    server.close()

def status_handler(document, chunk_size=None, pong=True, packet_id=0x00):
  """Handler answering the status request with `document`, optionally in small chunks, then echoing a ping."""
  def handle(conn, stream, server):
    server.read_status_request(stream)
    response = pack_packet(packet_id, pack_string(document))
    if chunk_size is None:
      conn.sendall(response)
    else:
      for i in range(0, len(response), chunk_size):
        conn.sendall(response[i:i + chunk_size])
    if pong:
      packet_id_, body = server.read_packet(stream)
      server.requests.append((packet_id_, body.getvalue()))
      conn.sendall(pack_packet(0x01, body.read()))
    server.wait_for_close(stream)
  return handle

@pytest.fixture
def closed_port():
  """A loopback port nobody listens on."""
  sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
  sock.bind(("127.0.0.1", 0))
  port = sock.getsockname()[1]
  sock.close()
  return port

class FakeSocket:
  """Stands in for a connected socket; `recv` hands out the response in the given chunks."""

  def __init__(self, chunks):
    self.chunks = [bytes(chunk) for chunk in chunks if chunk]
    self.sent = bytearray()
    self.timeouts = []
    self.closed = False

  def settimeout(self, timeout):
    self.timeouts.append(timeout)

  def sendall(self, data):
    self.sent += data

  def recv(self, size):
    if not self.chunks:
      return b""
    chunk = self.chunks[0]
    if len(chunk) > size:
      self.chunks[0] = chunk[size:]
      return chunk[:size]
    self.chunks.pop(0)
    return chunk

  def close(self):
    self.closed = True

def split_randomly(data, seed):
  """Cut `data` at random places."""
  rng = random.Random(seed)
  cuts = sorted(rng.sample(range(1, len(data)), rng.randint(1, min(10, len(data) - 1))))
  return [data[a:b] for a, b in zip([0] + cuts, cuts + [len(data)])]
