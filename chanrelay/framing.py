"""Wire framing: a five-byte header followed by an optionally compressed body.

The header is ``'C' 'H' size_hi size_lo compression``; the size counts the
body bytes after the header. Compressed bodies use the Snappy block format.
"""

from __future__ import annotations

from enum import IntEnum

MAX_PACKET_SIZE = 0x00FFFF
PACKET_HEADER_SIZE = 5

_TAG_C = 67
_TAG_H = 72


class CompressionType(IntEnum):
    NO_COMPRESSION = 0
    SNAPPY = 1


class FrameError(Exception):
    """The byte stream violates the wire format.

    ``frames`` holds the bodies that were fully decoded before the error.
    """

    def __init__(self, message: str, frames: list[bytes] | None = None) -> None:
        super().__init__(message)
        self.frames: list[bytes] = frames if frames is not None else []


def read_size(tag: bytes) -> int:
    """Body size from a header tag, or 0 when the tag's magic bytes are wrong."""
    if tag[0] != _TAG_C or tag[1] != _TAG_H:
        return 0
    return tag[3] | (tag[2] << 8)


# --- Snappy block format -------------------------------------------------


def _varint(value: int) -> bytes:
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def _read_varint(data: bytes) -> tuple[int, int]:
    value = 0
    for index, byte in enumerate(data[:5]):
        value |= (byte & 0x7F) << (7 * index)
        if byte < 0x80:
            if value > 0xFFFFFFFF:
                break
            return value, index + 1
    raise FrameError("snappy: corrupt input")


def _emit_literal(out: bytearray, literal: bytes) -> None:
    if not literal:
        return
    n = len(literal) - 1
    if n < 60:
        out.append(n << 2)
    else:
        width = (n.bit_length() + 7) // 8
        out.append((59 + width) << 2)
        out += n.to_bytes(width, "little")
    out += literal


def _emit_copy(out: bytearray, offset: int, length: int) -> None:
    while length > 0:
        chunk = min(length, 64)
        out += bytes(((chunk - 1) << 2 | 2, offset & 0xFF, offset >> 8))
        length -= chunk


def snappy_encode(data: bytes) -> bytes:
    """Compress ``data`` into a Snappy block."""
    out = bytearray(_varint(len(data)))
    size = len(data)
    table: dict[bytes, int] = {}
    pos = 0
    literal_start = 0
    while pos + 4 <= size:
        key = data[pos:pos + 4]
        candidate = table.get(key)
        table[key] = pos
        if candidate is None or pos - candidate > 0xFFFF:
            pos += 1
            continue
        _emit_literal(out, data[literal_start:pos])
        length = 4
        while pos + length < size and data[candidate + length] == data[pos + length]:
            length += 1
        _emit_copy(out, pos - candidate, length)
        pos += length
        literal_start = pos
    _emit_literal(out, data[literal_start:])
    return bytes(out)


def snappy_decode(data: bytes) -> bytes:
    """Decompress a Snappy block, raising FrameError on malformed input."""
    expected, pos = _read_varint(data)
    out = bytearray()
    end = len(data)
    while pos < end:
        tag = data[pos]
        kind = tag & 3
        if kind == 0:
            length = tag >> 2
            pos += 1
            if length >= 60:
                width = length - 59
                if pos + width > end:
                    raise FrameError("snappy: corrupt input")
                length = int.from_bytes(data[pos:pos + width], "little")
                pos += width
            length += 1
            if pos + length > end:
                raise FrameError("snappy: corrupt input")
            out += data[pos:pos + length]
            pos += length
        else:
            if kind == 1:
                if pos + 2 > end:
                    raise FrameError("snappy: corrupt input")
                length = 4 + ((tag >> 2) & 7)
                offset = ((tag >> 5) << 8) | data[pos + 1]
                pos += 2
            else:
                width = 2 if kind == 2 else 4
                if pos + 1 + width > end:
                    raise FrameError("snappy: corrupt input")
                length = (tag >> 2) + 1
                offset = int.from_bytes(data[pos + 1:pos + 1 + width], "little")
                pos += 1 + width
            if offset == 0 or offset > len(out):
                raise FrameError("snappy: corrupt input")
            if offset >= length:
                start = len(out) - offset
                out += out[start:start + length]
            else:
                for _ in range(length):
                    out.append(out[-offset])
        if len(out) > expected:
            raise FrameError("snappy: corrupt input")
    if len(out) != expected:
        raise FrameError("snappy: corrupt input")
    return bytes(out)


# --- Frames ---------------------------------------------------------------


def encode_frame(body: bytes, compression: CompressionType = CompressionType.NO_COMPRESSION) -> bytes:
    """Compress ``body`` as requested and prepend the frame header."""
    compression = CompressionType(compression)
    if compression is CompressionType.SNAPPY:
        body = snappy_encode(body)
    size = len(body)
    if size > MAX_PACKET_SIZE:
        raise FrameError(f"packet is oversized: {size} bytes")
    header = bytes((_TAG_C, _TAG_H, (size >> 8) & 0xFF, size & 0xFF, int(compression)))
    return header + body


class FrameDecoder:
    """Reassembles frames from a byte stream and yields their decompressed bodies.

    ``compression`` follows the last compressed frame received, so replies can
    use the same compression as the peer.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()
        self.compression = CompressionType.NO_COMPRESSION

    @property
    def pending(self) -> int:
        """Number of bytes buffered but not yet forming a whole frame."""
        return len(self._buffer)

    def reset(self) -> None:
        """Discard any buffered bytes."""
        self._buffer.clear()

    def feed(self, data: bytes) -> list[bytes]:
        """Add received bytes and return the bodies of all frames now complete."""
        self._buffer += data
        frames: list[bytes] = []
        pos = 0
        buffer = self._buffer
        while len(buffer) - pos >= PACKET_HEADER_SIZE:
            tag = bytes(buffer[pos:pos + PACKET_HEADER_SIZE])
            size = read_size(tag)
            if size == 0:
                self.reset()
                raise FrameError("invalid tag", frames)
            if size > MAX_PACKET_SIZE:
                self.reset()
                raise FrameError("packet size too large", frames)
            full_size = PACKET_HEADER_SIZE + size
            if len(buffer) - pos < full_size:
                break
            body = bytes(buffer[pos + PACKET_HEADER_SIZE:pos + full_size])
            compression_byte = tag[4]
            if compression_byte in CompressionType._value2member_map_ and compression_byte != 0:
                self.compression = CompressionType(compression_byte)
                if self.compression is CompressionType.SNAPPY:
                    try:
                        body = snappy_decode(body)
                    except FrameError as exc:
                        del buffer[:pos]
                        raise FrameError(str(exc), frames) from None
            frames.append(body)
            pos += full_size
        del buffer[:pos]
        return frames