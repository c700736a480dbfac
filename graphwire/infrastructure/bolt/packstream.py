"""PackStream value codec.

The protocol layer only needs two things from a codec: turn a message
`Structure` into bytes and turn bytes back into a value. Any object
satisfying `ValueCodec` can be plugged into a `Connection`; `PackStreamCodec`
is the default.
"""

from __future__ import annotations

from struct import error as struct_error
from struct import pack as struct_pack
from struct import unpack_from as struct_unpack
from typing import Any, Protocol


class ValueCodec(Protocol):
    def pack(self, value: Any) -> bytes: ...

    def unpack(self, data: bytes) -> Any: ...


class Structure:
    """Tagged composite value; every protocol message is one of these."""

    __slots__ = ("fields", "tag")

    def __init__(self, tag: int, *fields: Any) -> None:
        self.tag = tag
        self.fields = list(fields)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Structure):
            return NotImplemented
        return self.tag == other.tag and self.fields == other.fields

    def __hash__(self) -> int:
        return hash((self.tag, len(self.fields)))

    def __repr__(self) -> str:
        return f"Structure(0x{self.tag:02X}, {self.fields!r})"


class PackStreamError(ValueError):
    """Raised for values that cannot be packed or bytes that cannot be unpacked."""


INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1


class PackStreamCodec:
    def pack(self, value: Any) -> bytes:
        out: list[bytes] = []
        self._pack(value, out)
        return b"".join(out)

    def unpack(self, data: bytes) -> Any:
        try:
            value, offset = self._unpack(memoryview(data), 0)
        except (struct_error, IndexError) as e:
            raise PackStreamError(f"Truncated value: {e}") from e
        if offset != len(data):
            raise PackStreamError(f"{len(data) - offset} trailing byte(s) after value")
        return value

    def _pack(self, value: Any, out: list[bytes]) -> None:
        if value is None:
            out.append(b"\xc0")
        elif value is True:
            out.append(b"\xc3")
        elif value is False:
            out.append(b"\xc2")
        elif isinstance(value, int):
            self._pack_int(value, out)
        elif isinstance(value, float):
            out.append(b"\xc1" + struct_pack(">d", value))
        elif isinstance(value, str):
            encoded = value.encode("utf-8")
            self._pack_header(len(encoded), 0x80, b"\xd0", b"\xd1", b"\xd2", out)
            out.append(encoded)
        elif isinstance(value, (bytes, bytearray)):
            size = len(value)
            if size < 0x100:
                out.append(b"\xcc" + struct_pack(">B", size))
            elif size < 0x10000:
                out.append(b"\xcd" + struct_pack(">H", size))
            else:
                out.append(b"\xce" + struct_pack(">I", size))
            out.append(bytes(value))
        elif isinstance(value, (list, tuple)):
            self._pack_header(len(value), 0x90, b"\xd4", b"\xd5", b"\xd6", out)
            for item in value:
                self._pack(item, out)
        elif isinstance(value, dict):
            self._pack_header(len(value), 0xA0, b"\xd8", b"\xd9", b"\xda", out)
            for key, item in value.items():
                if not isinstance(key, str):
                    raise PackStreamError(f"Map keys must be strings, got {type(key).__name__}")
                self._pack(key, out)
                self._pack(item, out)
        elif isinstance(value, Structure):
            size = len(value.fields)
            if size >= 0x10:
                raise PackStreamError("Structures support at most 15 fields")
            out.append(struct_pack(">BB", 0xB0 + size, value.tag))
            for field in value.fields:
                self._pack(field, out)
        else:
            raise PackStreamError(f"Cannot pack values of type {type(value).__name__}")

    @staticmethod
    def _pack_int(value: int, out: list[bytes]) -> None:
        if -0x10 <= value < 0x80:
            out.append(struct_pack(">b", value))
        elif -0x80 <= value < 0x80:
            out.append(b"\xc8" + struct_pack(">b", value))
        elif -0x8000 <= value < 0x8000:
            out.append(b"\xc9" + struct_pack(">h", value))
        elif -0x80000000 <= value < 0x80000000:
            out.append(b"\xca" + struct_pack(">i", value))
        elif INT64_MIN <= value <= INT64_MAX:
            out.append(b"\xcb" + struct_pack(">q", value))
        else:
            raise PackStreamError(f"Integer {value} out of 64-bit range")

    @staticmethod
    def _pack_header(size: int, tiny: int, m8: bytes, m16: bytes, m32: bytes, out: list[bytes]) -> None:
        if size < 0x10:
            out.append(struct_pack(">B", tiny + size))
        elif size < 0x100:
            out.append(m8 + struct_pack(">B", size))
        elif size < 0x10000:
            out.append(m16 + struct_pack(">H", size))
        elif size < 0x100000000:
            out.append(m32 + struct_pack(">I", size))
        else:
            raise PackStreamError(f"Collection of size {size} is too large")

    def _unpack(self, data: memoryview, offset: int) -> tuple[Any, int]:
        try:
            marker = data[offset]
        except IndexError:
            raise PackStreamError("Unexpected end of data") from None
        offset += 1

        if marker < 0x80:
            return marker, offset
        if marker >= 0xF0:
            return marker - 0x100, offset
        high = marker & 0xF0
        if high == 0x80:
            return self._unpack_string(data, offset, marker & 0x0F)
        if high == 0x90:
            return self._unpack_list(data, offset, marker & 0x0F)
        if high == 0xA0:
            return self._unpack_map(data, offset, marker & 0x0F)
        if high == 0xB0:
            return self._unpack_structure(data, offset, marker & 0x0F)

        match marker:
            case 0xC0:
                return None, offset
            case 0xC1:
                return struct_unpack(">d", data, offset)[0], offset + 8
            case 0xC2:
                return False, offset
            case 0xC3:
                return True, offset
            case 0xC8:
                return struct_unpack(">b", data, offset)[0], offset + 1
            case 0xC9:
                return struct_unpack(">h", data, offset)[0], offset + 2
            case 0xCA:
                return struct_unpack(">i", data, offset)[0], offset + 4
            case 0xCB:
                return struct_unpack(">q", data, offset)[0], offset + 8
            case 0xCC | 0xCD | 0xCE:
                size, offset = self._unpack_size(data, offset, marker - 0xCC)
                return bytes(data[offset : offset + size]), offset + size
            case 0xD0 | 0xD1 | 0xD2:
                size, offset = self._unpack_size(data, offset, marker - 0xD0)
                return self._unpack_string(data, offset, size)
            case 0xD4 | 0xD5 | 0xD6:
                size, offset = self._unpack_size(data, offset, marker - 0xD4)
                return self._unpack_list(data, offset, size)
            case 0xD8 | 0xD9 | 0xDA:
                size, offset = self._unpack_size(data, offset, marker - 0xD8)
                return self._unpack_map(data, offset, size)
            case _:
                raise PackStreamError(f"Unknown marker byte 0x{marker:02X}")

    @staticmethod
    def _unpack_size(data: memoryview, offset: int, width_index: int) -> tuple[int, int]:
        fmt, width = ((">B", 1), (">H", 2), (">I", 4))[width_index]
        return struct_unpack(fmt, data, offset)[0], offset + width

    @staticmethod
    def _unpack_string(data: memoryview, offset: int, size: int) -> tuple[str, int]:
        end = offset + size
        if end > len(data):
            raise PackStreamError("Unexpected end of data in string")
        return bytes(data[offset:end]).decode("utf-8"), end

    def _unpack_list(self, data: memoryview, offset: int, size: int) -> tuple[list[Any], int]:
        items = []
        for _ in range(size):
            item, offset = self._unpack(data, offset)
            items.append(item)
        return items, offset

    def _unpack_map(self, data: memoryview, offset: int, size: int) -> tuple[dict[str, Any], int]:
        result = {}
        for _ in range(size):
            key, offset = self._unpack(data, offset)
            value, offset = self._unpack(data, offset)
            result[key] = value
        return result, offset

    def _unpack_structure(self, data: memoryview, offset: int, size: int) -> tuple[Structure, int]:
        tag = data[offset]
        fields, offset = self._unpack_list(data, offset + 1, size)
        return Structure(tag, *fields), offset
