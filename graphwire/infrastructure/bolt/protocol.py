"""Bolt wire constants, version negotiation and message framing."""

from __future__ import annotations

from struct import pack as struct_pack
from struct import unpack as struct_unpack
from typing import TYPE_CHECKING, Any

from ...exceptions import HandshakeError, ProtocolError
from .packstream import Structure

if TYPE_CHECKING:
    from .packstream import ValueCodec
    from .transport import Transport

type ProtocolVersion = tuple[int, int]

BOLT_MAGIC = b"\x60\x60\xb0\x17"
MAX_CHUNK_SIZE = 0xFFFF

# Request tags
HELLO = 0x01
GOODBYE = 0x02
RESET = 0x0F
RUN = 0x10
BEGIN = 0x11
COMMIT = 0x12
ROLLBACK = 0x13
DISCARD = 0x2F
PULL = 0x3F
ROUTE = 0x66

# Response tags
SUCCESS = 0x70
RECORD = 0x71
IGNORED = 0x7E
FAILURE = 0x7F

SUMMARY_TAGS = frozenset({SUCCESS, IGNORED, FAILURE})

# (major, minor, range) in preference order; a range of N also offers the N
# minor versions below.
PROPOSED_VERSIONS: tuple[tuple[int, int, int], ...] = ((4, 4, 2), (4, 1, 0), (4, 0, 0), (3, 0, 0))
SUPPORTED_VERSIONS: frozenset[ProtocolVersion] = frozenset({(4, 4), (4, 3), (4, 2), (4, 1), (4, 0), (3, 0)})


def handshake_request(proposals: tuple[tuple[int, int, int], ...] = PROPOSED_VERSIONS) -> bytes:
    """Magic preamble followed by exactly four version proposals."""
    slots = [struct_pack(">BBBB", 0, version_range, minor, major) for major, minor, version_range in proposals]
    slots += [b"\x00\x00\x00\x00"] * (4 - len(slots))
    return BOLT_MAGIC + b"".join(slots[:4])


def parse_handshake_response(data: bytes) -> ProtocolVersion:
    if len(data) != 4:
        raise HandshakeError(f"Expected 4 handshake bytes, got {len(data)}")
    if data == b"HTTP":
        raise HandshakeError("Server responded HTTP; the address is probably an HTTP port, not a Bolt port")
    _, _, minor, major = struct_unpack(">BBBB", data)
    version = (major, minor)
    if version == (0, 0):
        raise HandshakeError("Server did not agree on any proposed protocol version")
    if version not in SUPPORTED_VERSIONS:
        raise HandshakeError(f"Server selected unsupported protocol version {major}.{minor}")
    return version


def frame(message: bytes) -> bytes:
    """Split one encoded message into length-prefixed chunks plus an end marker."""
    parts = []
    for offset in range(0, len(message), MAX_CHUNK_SIZE):
        chunk = message[offset : offset + MAX_CHUNK_SIZE]
        parts.append(struct_pack(">H", len(chunk)))
        parts.append(chunk)
    parts.append(b"\x00\x00")
    return b"".join(parts)


class MessageChannel:
    """Reads and writes whole protocol messages over a transport."""

    __slots__ = ("_codec", "_transport")

    def __init__(self, transport: Transport, codec: ValueCodec) -> None:
        self._transport = transport
        self._codec = codec

    async def asend(self, *messages: Structure) -> None:
        await self._transport.awrite(b"".join(frame(self._codec.pack(message)) for message in messages))

    async def areceive(self) -> Structure:
        chunks = []
        while True:
            (size,) = struct_unpack(">H", await self._transport.aread_exactly(2))
            if size == 0:
                # A zero chunk with nothing before it is a keep-alive no-op.
                if chunks:
                    break
                continue
            chunks.append(await self._transport.aread_exactly(size))
        try:
            message: Any = self._codec.unpack(b"".join(chunks))
        except ValueError as e:
            raise ProtocolError(f"Malformed message: {e}") from e
        if not isinstance(message, Structure):
            raise ProtocolError(f"Expected a message structure, got {type(message).__name__}")
        return message
