"""
Block header feed over JSON-RPC ``eth_subscribe(["newHeads"])``.

Endpoints:
  /path/to/geth.ipc          Unix-domain IPC socket (concatenated JSON values)
  ws://host:port[/path]      WebSocket, one JSON-RPC message per frame
  wss://host:port[/path]     same over TLS

HTTP endpoints are rejected: notifications need a persistent connection.

Usage:
    feed = await HeaderFeed.connect("/home/user/.ethereum/geth.ipc")
    async for header in feed.headers():
        ...
"""

import asyncio
import base64
import codecs
import hashlib
import json
import logging
import os
import ssl
import struct
from dataclasses import dataclass
from urllib.parse import urlparse

from monitor.errors import SetupError, StreamFault

log = logging.getLogger("header_feed")

WS_MAGIC = b"258EAFA5-E914-47DA-95CA-C5AB0DC85B11"

WS_OP_CONT = 0x0
WS_OP_TEXT = 0x1
WS_OP_BINARY = 0x2
WS_OP_CLOSE = 0x8
WS_OP_PING = 0x9
WS_OP_PONG = 0xA

SUBSCRIBE_ID = 1
READ_CHUNK = 65536
# Largest frame accepted from the node; a newHeads notification is ~1 KiB
MAX_FRAME = 16 * 1024 * 1024


# ── Headers ──────────────────────────────────────────────────────────────────

def hex_to_int(value) -> int:
    """Decode a JSON-RPC quantity ('0x1b4') to int."""
    if isinstance(value, bool):
        raise ValueError(f"not a quantity: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value[:2] in ("0x", "0X"):
        return int(value, 16)
    raise ValueError(f"not a hex quantity: {value!r}")


def hex_to_bytes(value) -> bytes:
    if not isinstance(value, str) or value[:2] not in ("0x", "0X"):
        raise ValueError(f"not hex data: {value!r}")
    return bytes.fromhex(value[2:])


@dataclass(frozen=True)
class BlockHeader:
    number: int
    hash: bytes
    gas_limit: int
    gas_used: int
    timestamp: int

    @property
    def hash_prefix(self) -> str:
        return self.hash[:4].hex()

    @classmethod
    def from_rpc(cls, obj: dict) -> "BlockHeader":
        """Build from a newHeads result. Raises KeyError/TypeError/ValueError."""
        return cls(
            number=hex_to_int(obj["number"]),
            hash=hex_to_bytes(obj["hash"]),
            gas_limit=hex_to_int(obj["gasLimit"]),
            gas_used=hex_to_int(obj["gasUsed"]),
            timestamp=hex_to_int(obj["timestamp"]),
        )


# ── Framing ──────────────────────────────────────────────────────────────────

class JsonStreamDecoder:
    """Splits a byte stream of concatenated JSON values.
    Buffers an incomplete trailing value until more data arrives."""

    def __init__(self):
        self._decoder = json.JSONDecoder()
        self._utf8 = codecs.getincrementaldecoder("utf-8")()
        self._buf = ""

    def feed(self, data: bytes) -> list:
        self._buf += self._utf8.decode(data)
        values = []
        pos = 0
        end = len(self._buf)
        while True:
            while pos < end and self._buf[pos].isspace():
                pos += 1
            if pos == end:
                break
            try:
                value, pos = self._decoder.raw_decode(self._buf, pos)
            except json.JSONDecodeError as e:
                # Truncated value: wait for more input. Anything else is garbage.
                if e.pos >= end or _is_truncated(self._buf[pos:]):
                    break
                raise
            values.append(value)
        self._buf = self._buf[pos:]
        return values

    @property
    def pending(self) -> str:
        return self._buf


def _is_truncated(fragment: str) -> bool:
    """True if ``fragment`` ends inside an open string, object or array."""
    depth = 0
    in_str = False
    escaped = False
    for ch in fragment:
        if in_str:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_str = False
        elif ch == '"':
            in_str = True
        elif ch in "{[":
            depth += 1
        elif ch in "}]":
            depth -= 1
    return in_str or depth > 0


class IpcTransport:
    """JSON-RPC over a Unix-domain socket."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer
        self._decoder = JsonStreamDecoder()
        self._pending = []

    @classmethod
    async def open(cls, path: str) -> "IpcTransport":
        reader, writer = await asyncio.open_unix_connection(path)
        return cls(reader, writer)

    async def send(self, msg: dict):
        self.writer.write(json.dumps(msg).encode() + b"\n")
        await self.writer.drain()

    async def recv(self):
        while not self._pending:
            data = await self.reader.read(READ_CHUNK)
            if not data:
                if self._decoder.pending.strip():
                    raise ConnectionError("connection closed by node mid-message")
                raise ConnectionError("connection closed by node")
            self._pending.extend(self._decoder.feed(data))
        return self._pending.pop(0)

    def close(self):
        self.writer.close()


def ws_encode_frame(payload: bytes, opcode: int = WS_OP_TEXT) -> bytes:
    """Encode a single masked client frame."""
    mask_key = os.urandom(4)
    masked = bytes(b ^ mask_key[i % 4] for i, b in enumerate(payload))
    header = bytearray()
    header.append(0x80 | opcode)
    length = len(masked)
    if length < 126:
        header.append(0x80 | length)
    elif length < 65536:
        header.append(0x80 | 126)
        header.extend(struct.pack(">H", length))
    else:
        header.append(0x80 | 127)
        header.extend(struct.pack(">Q", length))
    header.extend(mask_key)
    return bytes(header) + masked


async def ws_read_frame(reader: asyncio.StreamReader,
                        max_size: int = MAX_FRAME) -> tuple[bool, int, bytes]:
    """Read one frame. Returns (fin, opcode, payload)."""
    h = await reader.readexactly(2)
    fin = bool(h[0] & 0x80)
    if h[0] & 0x70:
        # No extensions are negotiated, so RSV1-3 must be clear
        raise ConnectionError(f"reserved bits set in frame header: {h[0]:#04x}")
    opcode = h[0] & 0x0F
    length = h[1] & 0x7F
    if length == 126:
        length = struct.unpack(">H", await reader.readexactly(2))[0]
    elif length == 127:
        length = struct.unpack(">Q", await reader.readexactly(8))[0]
    if length > max_size:
        raise ConnectionError(f"frame of {length} bytes exceeds limit of {max_size}")
    masked = bool(h[1] & 0x80)
    mask_key = await reader.readexactly(4) if masked else None
    payload = await reader.readexactly(length)
    if mask_key:
        payload = bytes(b ^ mask_key[i % 4] for i, b in enumerate(payload))
    return fin, opcode, payload


class WsTransport:
    """JSON-RPC over a client WebSocket connection."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer

    @classmethod
    async def open(cls, url: str) -> "WsTransport":
        parsed = urlparse(url)
        host = parsed.hostname
        if not host:
            raise ValueError(f"no host in {url!r}")
        use_ssl = parsed.scheme == "wss"
        port = parsed.port or (443 if use_ssl else 80)
        path = parsed.path or "/"
        if parsed.query:
            path += "?" + parsed.query

        if use_ssl:
            ctx = ssl.create_default_context()
            reader, writer = await asyncio.open_connection(host, port, ssl=ctx)
        else:
            reader, writer = await asyncio.open_connection(host, port)

        key = base64.b64encode(os.urandom(16)).decode()
        req = (
            f"GET {path} HTTP/1.1\r\n"
            f"Host: {host}:{port}\r\n"
            f"Upgrade: websocket\r\n"
            f"Connection: Upgrade\r\n"
            f"Sec-WebSocket-Key: {key}\r\n"
            f"Sec-WebSocket-Version: 13\r\n"
            f"\r\n"
        )
        writer.write(req.encode())
        await writer.drain()

        resp = (await reader.readuntil(b"\r\n\r\n")).decode("latin-1")
        lines = resp.split("\r\n")
        status_line = lines[0]
        if " 101 " not in f"{status_line} ":
            writer.close()
            raise ConnectionError(f"websocket upgrade refused: {status_line}")
        accept_key = None
        for line in lines[1:]:
            if line.lower().startswith("sec-websocket-accept:"):
                accept_key = line.split(":", 1)[1].strip()
        expected = base64.b64encode(hashlib.sha1(key.encode() + WS_MAGIC).digest()).decode()
        if accept_key != expected:
            writer.close()
            raise ConnectionError(f"bad accept key: {accept_key} != {expected}")
        log.debug("WebSocket connected: %s", status_line)
        return cls(reader, writer)

    async def send(self, msg: dict):
        self.writer.write(ws_encode_frame(json.dumps(msg).encode()))
        await self.writer.drain()

    async def recv(self):
        fragments = []
        while True:
            fin, opcode, payload = await ws_read_frame(self.reader)
            if opcode == WS_OP_PING:
                self.writer.write(ws_encode_frame(payload, opcode=WS_OP_PONG))
                await self.writer.drain()
                continue
            if opcode == WS_OP_PONG:
                continue
            if opcode == WS_OP_CLOSE:
                code = struct.unpack(">H", payload[:2])[0] if len(payload) >= 2 else None
                raise ConnectionError(f"websocket closed by node (code={code})")
            if opcode in (WS_OP_TEXT, WS_OP_BINARY, WS_OP_CONT):
                fragments.append(payload)
                if fin:
                    return json.loads(b"".join(fragments).decode("utf-8"))

    def close(self):
        try:
            self.writer.write(ws_encode_frame(struct.pack(">H", 1000), opcode=WS_OP_CLOSE))
        except (ConnectionError, RuntimeError):
            pass
        self.writer.close()


# ── HeaderFeed ───────────────────────────────────────────────────────────────

class HeaderFeed:
    """A live newHeads subscription. Faults fire at most once."""

    def __init__(self, transport, subscription_id: str, endpoint: str = ""):
        self.transport = transport
        self.subscription_id = subscription_id
        self.endpoint = endpoint
        self.fault = None
        self._closed = False

    @classmethod
    async def connect(cls, endpoint: str, timeout: float = 10.0) -> "HeaderFeed":
        """Dial ``endpoint`` and subscribe. Any failure raises SetupError."""
        scheme = urlparse(endpoint).scheme.lower()
        if scheme in ("http", "https"):
            raise SetupError(
                f"{endpoint}: notifications not supported over HTTP, use ws:// or an IPC path"
            )
        try:
            return await asyncio.wait_for(cls._dial(endpoint, scheme), timeout)
        except asyncio.TimeoutError as e:
            raise SetupError(f"{endpoint}: timed out after {timeout:.0f}s") from e
        except (OSError, EOFError, ValueError, asyncio.LimitOverrunError) as e:
            raise SetupError(f"{endpoint}: {str(e) or type(e).__name__}") from e

    @classmethod
    async def _dial(cls, endpoint: str, scheme: str) -> "HeaderFeed":
        if scheme in ("ws", "wss"):
            transport = await WsTransport.open(endpoint)
        else:
            transport = await IpcTransport.open(os.path.expanduser(endpoint))
        try:
            sub_id = await cls._subscribe(transport, endpoint)
        except BaseException:
            transport.close()
            raise
        log.info("Subscribed to newHeads on %s (id=%s)", endpoint, sub_id)
        return cls(transport, sub_id, endpoint)

    @staticmethod
    async def _subscribe(transport, endpoint: str) -> str:
        await transport.send({
            "jsonrpc": "2.0",
            "id": SUBSCRIBE_ID,
            "method": "eth_subscribe",
            "params": ["newHeads"],
        })
        while True:
            msg = await transport.recv()
            if not isinstance(msg, dict) or msg.get("id") != SUBSCRIBE_ID:
                continue
            if "error" in msg:
                err = msg["error"] or {}
                raise SetupError(
                    f"{endpoint}: eth_subscribe failed: {err.get('message', err)}"
                )
            sub_id = msg.get("result")
            if not sub_id:
                raise SetupError(f"{endpoint}: eth_subscribe returned no subscription id")
            return sub_id

    async def headers(self):
        """Yield headers in arrival order until the subscription breaks."""
        if self.fault is not None:
            raise self.fault
        while True:
            try:
                msg = await self.transport.recv()
            except (asyncio.IncompleteReadError, OSError) as e:
                raise self._fail(f"subscription dropped: {str(e) or type(e).__name__}") from e
            except ValueError as e:
                raise self._fail(f"undecodable message: {e}") from e

            if not isinstance(msg, dict) or msg.get("method") != "eth_subscription":
                continue
            params = msg.get("params")
            if not isinstance(params, dict):
                raise self._fail(f"malformed subscription params: {params!r}")
            if params.get("subscription") != self.subscription_id:
                continue
            try:
                header = BlockHeader.from_rpc(params.get("result"))
            except (KeyError, TypeError, ValueError) as e:
                raise self._fail(f"undecodable header: {e!r}") from e
            yield header

    def _fail(self, reason: str) -> StreamFault:
        self.fault = StreamFault(f"{self.endpoint}: {reason}")
        self.close()
        return self.fault

    def close(self):
        if self._closed:
            return
        self._closed = True
        self.transport.close()
