"""Connections: framed packets of message packs over a byte transport."""

from __future__ import annotations

import itertools
import logging
import threading
import time
import zlib
from collections import deque
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Protocol

from chanrelay.framing import MAX_PACKET_SIZE, FrameDecoder, FrameError, encode_frame

logger = logging.getLogger(__name__)

_MAX_ID_TRIES = 100
_DEFAULT_READ_SIZE = 0x10000


class ConnectionType(IntEnum):
    NO_CONNECTION = 0
    SERVER = 1
    CLIENT = 2


class ConnectionState(IntEnum):
    UNAUTHENTICATED = 0
    AUTHENTICATED = 1
    CLOSING = 2


class Transport(Protocol):
    """The byte stream under a connection; ``read`` returns b"" at end of stream."""

    def read(self, size: int) -> bytes: ...

    def write(self, data: bytes) -> Any: ...

    def close(self) -> Any: ...


# --- Wire encoding of message packs and packets ----------------------------


def _put_varint(out: bytearray, value: int) -> None:
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)


def _get_varint(data: bytes, pos: int) -> tuple[int, int]:
    value = 0
    shift = 0
    while True:
        if pos >= len(data) or shift > 63:
            raise ValueError("truncated varint")
        byte = data[pos]
        pos += 1
        value |= (byte & 0x7F) << shift
        if byte < 0x80:
            return value, pos
        shift += 7


def _fields(data: bytes):
    """Yield (field number, wire type, value) for each field in ``data``."""
    pos = 0
    while pos < len(data):
        key, pos = _get_varint(data, pos)
        number, wire_type = key >> 3, key & 7
        if wire_type == 0:
            value, pos = _get_varint(data, pos)
            yield number, wire_type, value
        elif wire_type == 2:
            length, pos = _get_varint(data, pos)
            if pos + length > len(data):
                raise ValueError("truncated field")
            yield number, wire_type, bytes(data[pos:pos + length])
            pos += length
        else:
            raise ValueError(f"unsupported wire type {wire_type}")


@dataclass
class MessagePack:
    """One message addressed to a channel, with its serialized body."""

    channel_id: int = 0
    broadcast: int = 0
    stub_id: int = 0
    msg_type: int = 0
    msg_body: bytes = b""

    _VARINT_FIELDS = ("channel_id", "broadcast", "stub_id", "msg_type")

    def encode(self) -> bytes:
        out = bytearray()
        for number, name in enumerate(self._VARINT_FIELDS, start=1):
            value = getattr(self, name)
            if value:
                _put_varint(out, number << 3)
                _put_varint(out, value)
        if self.msg_body:
            _put_varint(out, (5 << 3) | 2)
            _put_varint(out, len(self.msg_body))
            out += self.msg_body
        return bytes(out)

    @classmethod
    def decode(cls, data: bytes) -> MessagePack:
        """Parse an encoded pack, raising ValueError when it is malformed."""
        pack = cls()
        for number, wire_type, value in _fields(data):
            if 1 <= number <= 4 and wire_type == 0:
                setattr(pack, cls._VARINT_FIELDS[number - 1], value)
            elif number == 5 and wire_type == 2:
                pack.msg_body = value
        return pack


def _packet_entry(pack: MessagePack) -> bytes:
    body = pack.encode()
    out = bytearray()
    _put_varint(out, (1 << 3) | 2)
    _put_varint(out, len(body))
    return bytes(out) + body


def _decode_packet(data: bytes) -> list[MessagePack]:
    return [
        MessagePack.decode(value)
        for number, wire_type, value in _fields(data)
        if number == 1 and wire_type == 2
    ]


def _to_pack(item: Any) -> MessagePack | None:
    if isinstance(item, MessagePack):
        return item
    msg = item.msg
    if isinstance(msg, (bytes, bytearray)):
        body = bytes(msg)
    elif callable(getattr(msg, "to_bytes", None)):
        body = msg.to_bytes()
    else:
        return None
    return MessagePack(
        channel_id=item.channel_id,
        broadcast=item.broadcast,
        stub_id=item.stub_id,
        msg_type=int(item.msg_type),
        msg_body=body,
    )


MessageCallback = Callable[["Connection", MessagePack], None]


class Connection:
    """An endpoint whose outgoing packs are batched into frames on flush."""

    def __init__(
        self,
        conn_id: int,
        connection_type: int,
        transport: Transport,
        *,
        on_message: MessageCallback | None = None,
        registry: ConnectionRegistry | None = None,
        read_size: int = _DEFAULT_READ_SIZE,
    ) -> None:
        self.id = conn_id
        self.connection_type = ConnectionType(connection_type)
        self.transport = transport
        self.read_size = read_size
        self.pit = ""
        self.state = ConnectionState.UNAUTHENTICATED
        self.conn_time = time.time()
        self._on_message = on_message
        self._registry = registry
        self._decoder = FrameDecoder()
        self._send_queue: deque[MessagePack] = deque()
        self._send_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._close_handlers: list[Callable[[], None]] = []
        self.logger = logging.LoggerAdapter(
            logger, {"conn_type": self.connection_type.name, "conn_id": conn_id}
        )

    @property
    def compression(self):
        """Compression of outgoing frames, following the peer's last compressed frame."""
        return self._decoder.compression

    @property
    def remote_addr(self) -> Any:
        return getattr(self.transport, "remote_addr", None)

    def __str__(self) -> str:
        return f"Connection({self.connection_type.name} {self.id})"

    def is_closing(self) -> bool:
        return self.state > ConnectionState.AUTHENTICATED

    def send(self, pack: Any) -> None:
        """Queue a MessagePack, or a message context, for the next flush."""
        if self.is_closing():
            return
        converted = _to_pack(pack)
        if converted is None:
            self.logger.error("failed to marshal message (msg_type=%s)", pack.msg_type)
            return
        with self._send_lock:
            self._send_queue.append(converted)

    def flush(self) -> None:
        """Write all queued packs that fit into one frame."""
        with self._send_lock:
            if not self._send_queue:
                return
            entries: list[bytes] = []
            size = 0
            while self._send_queue:
                pack = self._send_queue.popleft()
                entry = _packet_entry(pack)
                if size + len(entry) > MAX_PACKET_SIZE:
                    if not entries:
                        self.logger.error(
                            "message is too large to send (msg_type=%s, size=%d)",
                            pack.msg_type,
                            len(pack.msg_body),
                        )
                        continue
                    self.logger.info(
                        "packet is going to be oversized, %d message(s) left in queue",
                        len(self._send_queue) + 1,
                    )
                    self._send_queue.appendleft(pack)
                    break
                entries.append(entry)
                size += len(entry)
        if not entries:
            return

        try:
            frame = encode_frame(b"".join(entries), self.compression)
        except FrameError as exc:
            self.logger.error("%s", exc)
            return
        try:
            self.transport.write(frame)
        except OSError as exc:
            self.logger.error("error writing packet: %s", exc)

    def receive(self) -> None:
        """Read once from the transport and dispatch every complete message."""
        if self.is_closing():
            return
        try:
            data = self.transport.read(self.read_size)
        except OSError as exc:
            self.logger.warning("read bytes from %s: %s", self.remote_addr, exc)
            self.close()
            return
        if not data:
            self.logger.info("disconnected (%s)", self.remote_addr)
            self.close()
            return

        try:
            frames = self._decoder.feed(data)
        except FrameError as exc:
            self._dispatch(exc.frames)
            self.logger.warning("%s, the connection will be closed", exc)
            self.close()
            return
        self._dispatch(frames)

    def _dispatch(self, frames: list[bytes]) -> None:
        for body in frames:
            try:
                packs = _decode_packet(body)
            except ValueError as exc:
                self.logger.error("failed to unmarshal packet (size=%d): %s", len(body), exc)
                continue
            for pack in packs:
                if self._on_message is not None:
                    self._on_message(self, pack)

    def add_close_handler(self, handler: Callable[[], None]) -> None:
        self._close_handlers.append(handler)

    def close(self) -> None:
        """Close once: run the close handlers, close the transport, unregister."""
        with self._state_lock:
            if self.is_closing():
                self.logger.debug("connection is already closed")
                return
            self.state = ConnectionState.CLOSING
        for handler in self._close_handlers:
            handler()
        try:
            self.transport.close()
        except Exception as exc:  # closing must never fail the caller
            self.logger.debug("error closing transport: %s", exc)
        with self._send_lock:
            self._send_queue.clear()
        if self._registry is not None:
            self._registry._discard(self)
        self.logger.info("closed connection")

    def on_authenticated(self, pit: str) -> None:
        if self.is_closing():
            return
        self.state = ConnectionState.AUTHENTICATED
        self.pit = pit
        if self._registry is not None:
            self._registry._mark_authenticated(self)

    def start(self) -> tuple[threading.Thread, threading.Thread]:
        """Run the receive and flush loops in background threads until closed."""

        def receive_loop() -> None:
            while not self.is_closing():
                self.receive()

        def flush_loop() -> None:
            while not self.is_closing():
                self.flush()
                time.sleep(0.001)

        threads = (
            threading.Thread(target=receive_loop, daemon=True),
            threading.Thread(target=flush_loop, daemon=True),
        )
        for thread in threads:
            thread.start()
        return threads


class ConnectionRegistry:
    """Assigns connection ids and keeps every open connection."""

    def __init__(
        self,
        *,
        development: bool = False,
        max_connection_id_bits: int = 32,
        auth_timeout_ms: int = 0,
        on_message: MessageCallback | None = None,
    ) -> None:
        self.development = development
        self.max_connection_id_bits = max_connection_id_bits
        self.auth_timeout_ms = auth_timeout_ms
        self._on_message = on_message
        self._connections: dict[int, Connection] = {}
        self._unauthenticated: dict[int, Connection] = {}
        self._next_id = 0
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    @property
    def unauthenticated(self) -> dict[int, Connection]:
        """Connections still waiting to authenticate (tracked when a timeout is set)."""
        with self._lock:
            return dict(self._unauthenticated)

    def _generate_id(self, transport: Transport, max_id: int) -> int:
        if self.development:
            self._next_id += 1
            if self._next_id >= max_id:
                raise RuntimeError(f"connection id reached the limit {max_id}")
            return self._next_id
        digest = zlib.crc32(str(getattr(transport, "remote_addr", "")).encode())
        return (digest ^ (time.time_ns() & 0xFFFFFFFF)) & max_id

    def add_connection(self, transport: Transport, connection_type: int) -> Connection:
        """Register a new connection over ``transport`` with a fresh id."""
        connection_type = ConnectionType(connection_type)
        if connection_type not in (ConnectionType.SERVER, ConnectionType.CLIENT):
            raise ValueError(f"invalid connection type: {connection_type.name}")
        max_id = (1 << self.max_connection_id_bits) - 1

        with self._lock:
            for tries in itertools.count():
                conn_id = self._generate_id(transport, max_id)
                if conn_id not in self._connections:
                    break
                logger.warning("connection id %d exists, generating another one", conn_id)
                if tries >= _MAX_ID_TRIES:
                    raise RuntimeError("could not find a non-duplicate connection id")

            connection = Connection(
                conn_id,
                connection_type,
                transport,
                on_message=self._on_message,
                registry=self,
            )
            self._connections[conn_id] = connection
            if self.auth_timeout_ms > 0:
                self._unauthenticated[conn_id] = connection
        return connection

    def get_connection(self, connection_id: int) -> Connection | None:
        """The open connection with this id, or None."""
        with self._lock:
            connection = self._connections.get(connection_id)
        if connection is None or connection.is_closing():
            return None
        return connection

    def _discard(self, connection: Connection) -> None:
        with self._lock:
            if self._connections.get(connection.id) is connection:
                del self._connections[connection.id]
            self._unauthenticated.pop(connection.id, None)

    def _mark_authenticated(self, connection: Connection) -> None:
        with self._lock:
            self._unauthenticated.pop(connection.id, None)


def is_origin_trusted(remote_addr: str, trusted_origins: list[str] | None) -> bool:
    """True when no origins are configured or ``remote_addr`` is one of them."""
    if trusted_origins is None:
        return True
    return remote_addr in trusted_origins


def split_websocket_address(address: str) -> tuple[str, str]:
    """Split a WebSocket address into the listening address and the URL path."""
    scheme_end = address.find("://")
    if scheme_end >= 0:
        address = address[scheme_end + 3:]
    path_start = address.find("/")
    if path_start < 0:
        return address, "/"
    return address[:path_start], address[path_start:]