"""Length-prefixed record packing for tracker dumps, with optional run compression."""

import struct

_SIZE_FIELD = struct.Struct("<I")
_MAX_LITERALS = 15
_MAX_SHORT_FILL = 14
_LONG_FILL_THRESHOLD = 64
_MAX_LONG_FILL = 0xFFFF
_LONG_FILL_MARK = 0x0F


class PackError(Exception):
    """Raised when a record does not fit or cannot be read back."""


def compress_runs(data: bytes) -> bytes:
    """Compress ``data`` with the tracker's literal/fill run encoding.

    Each group starts with a control byte: the high nibble counts the
    literal bytes that follow, the low nibble a fill count (repetitions of
    the last literal). Longer fills follow as extra bytes, or as
    ``0x0f lo hi`` triples when 64 or more remain.
    """
    src = bytes(data)
    size = len(src)
    out = bytearray()
    si = 0
    while si < size:
        ci = len(out)
        out.append(0)
        fill = 0
        while si < size and len(out) - ci < _MAX_LITERALS + 1:
            b = src[si]
            out.append(b)
            si += 1
            if si < size and src[si] == b:
                start = si
                while si < size and src[si] == b:
                    si += 1
                fill = si - start
                if fill >= 2:
                    break
        head_fill = min(fill, _MAX_SHORT_FILL)
        fill -= head_fill
        out[ci] = ((len(out) - ci - 1) << 4) | head_fill
        if fill < _LONG_FILL_THRESHOLD:
            while fill:
                part = min(fill, _MAX_SHORT_FILL)
                out.append(part)
                fill -= part
        else:
            while fill:
                part = min(fill, _MAX_LONG_FILL)
                out += bytes((_LONG_FILL_MARK, part & 0xFF, part >> 8))
                fill -= part
    return bytes(out)


class PackWriter:
    """Writes length-prefixed records into a buffer of fixed capacity."""

    def __init__(self, capacity: int, compress: bool = False):
        if capacity < 0:
            raise ValueError(f"negative capacity: {capacity}")
        self.capacity = capacity
        self.compress = compress
        self._buf = bytearray()

    @property
    def position(self) -> int:
        return len(self._buf)

    def have_space(self, size: int) -> bool:
        """Return True if ``size`` more bytes fit."""
        return self.capacity - len(self._buf) >= size

    def _fits(self, start: int, size: int) -> bool:
        return start + size < self.capacity

    def append(self, data: bytes) -> int:
        """Append raw bytes; return the offset they were written at."""
        data = bytes(data)
        start = len(self._buf)
        if not self._fits(start, len(data)):
            raise PackError(
                f"no room for {len(data)} bytes at offset {start} "
                f"(capacity {self.capacity})"
            )
        self._buf += data
        return start

    def pack(self, data: bytes) -> None:
        """Write one record: a 32-bit record size, then the (packed) payload."""
        data = bytes(data)
        body_start = len(self._buf) + _SIZE_FIELD.size
        if not self._fits(body_start, len(data)):
            raise PackError(
                f"record of {len(data)} bytes does not fit at offset {body_start} "
                f"(capacity {self.capacity})"
            )
        body = compress_runs(data) if self.compress else data
        if body_start + len(body) > self.capacity:
            raise PackError(
                f"packed record of {len(body)} bytes overruns capacity {self.capacity}"
            )
        self._buf += _SIZE_FIELD.pack(_SIZE_FIELD.size + len(body))
        self._buf += body

    def getvalue(self) -> bytes:
        """Return everything written so far."""
        return bytes(self._buf)


class PackReader:
    """Reads back uncompressed records written by :class:`PackWriter`."""

    def __init__(self, data: bytes):
        self._data = bytes(data)
        self._cur = 0

    @property
    def position(self) -> int:
        return self._cur

    def unpack(self, size: int) -> bytes:
        """Read the next record, which must hold exactly ``size`` bytes."""
        head_end = self._cur + _SIZE_FIELD.size
        if head_end > len(self._data):
            raise PackError(f"truncated record header at offset {self._cur}")
        (record_size,) = _SIZE_FIELD.unpack_from(self._data, self._cur)
        if record_size != size + _SIZE_FIELD.size:
            raise PackError(
                f"record at offset {self._cur} holds {record_size - _SIZE_FIELD.size} "
                f"bytes, expected {size}"
            )
        if head_end + size > len(self._data):
            raise PackError(f"truncated record body at offset {head_end}")
        self._cur = head_end + size
        return self._data[head_end:self._cur]