"""Binary snapshots of a memory tracker's full state."""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import Any, ClassVar, Sequence

from .layout import (
    BITMAP_BITS,
    BLK_POW2_ELEMENTS,
    HB_SIZE_TOTAL,
    MAX_HEAPS,
    MTR_VERSION,
    TRACE_BIN_SIZE,
    TRACE_INDEX_LIMIT,
)
from .packing import PackError, PackReader, PackWriter
from .tracker import BlockHeader, HeapHeader, MemBlock, MemoryTracker

logger = logging.getLogger(__name__)

PTR_SIZE = 8

_HEADER = struct.Struct("<HBBiiiiiII")
_HEAP_HEAD = struct.Struct("<QQQ16s")
_BIN_HEAD = struct.Struct("<I4xQ")
_BLOCK = struct.Struct("<QIIII")
_HEAP_RECORD_SIZE = _HEAP_HEAD.size + BLK_POW2_ELEMENTS * _BIN_HEAD.size

_U32 = 0xFFFFFFFF
_U64 = 0xFFFFFFFFFFFFFFFF
_FULL_CHUNK = (1 << BITMAP_BITS) - 1


@dataclass
class DumpHeader:
    """Fixed-size header that opens every dump."""

    version: int = MTR_VERSION
    ptr_size: int = PTR_SIZE
    pad: int = 0
    num_heaps: int = 0
    num_blocks: int = 0
    num_bt_elems: int = 0
    max_blocks: int = 0
    max_bt_elems: int = 0
    first_bit_idx: int = 0
    saved_bit_idx: int = 0

    SIZE: ClassVar[int] = _HEADER.size

    def to_bytes(self) -> bytes:
        """Encode the header in its little-endian wire form."""
        return _HEADER.pack(
            self.version,
            self.ptr_size,
            self.pad,
            self.num_heaps,
            self.num_blocks,
            self.num_bt_elems,
            self.max_blocks,
            self.max_bt_elems,
            self.first_bit_idx,
            self.saved_bit_idx,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "DumpHeader":
        """Decode a header written by :meth:`to_bytes`."""
        data = bytes(data)
        if len(data) != cls.SIZE:
            raise ValueError(f"dump header needs {cls.SIZE} bytes, got {len(data)}")
        return cls(*_HEADER.unpack(data))


def _heap_key(heap: Any) -> int:
    if heap is None:
        return 0
    if isinstance(heap, int) and not isinstance(heap, bool):
        return heap & _U64
    return id(heap) & _U64


def _u32_array(values: Sequence[int]) -> bytes:
    return struct.pack(f"<{len(values)}I", *(v & _U32 for v in values))


def _u64_array(values: Sequence[int]) -> bytes:
    return struct.pack(f"<{len(values)}Q", *(v & _U64 for v in values))


def _encode_heap(header: HeapHeader) -> bytes:
    head = _HEAP_HEAD.pack(
        _heap_key(header.heap_id),
        header.allocated & _U64,
        header.count & _U64,
        header.name.encode("utf-8", "replace")[:15],
    )
    bins = b"".join(
        _BIN_HEAD.pack(bh.count & _U32, bh.allocated & _U64) for bh in header.block_headers
    )
    return head + bins


def _decode_heap(raw: bytes, known: dict[int, Any]) -> HeapHeader:
    key, allocated, count, name = _HEAP_HEAD.unpack_from(raw)
    bins = [
        BlockHeader(count=c, allocated=a)
        for c, a in _BIN_HEAD.iter_unpack(raw[_HEAP_HEAD.size:])
    ]
    return HeapHeader(
        heap_id=known.get(key, key),
        allocated=allocated,
        count=count,
        name=name.split(b"\0", 1)[0].decode("utf-8", "replace"),
        block_headers=bins,
    )


def _encode_blocks(blocks: Sequence[MemBlock]) -> bytes:
    return b"".join(
        _BLOCK.pack(
            b.addr & _U64,
            b.size & _U32,
            b.next_index & _U32,
            b.trace_id & _U32,
            b.timestamp & _U32,
        )
        for b in blocks
    )


def prepare_full_dump(tracker: MemoryTracker, compress: bool = False) -> bytes:
    """Serialise the tracker's state into a buffer of ``tracker.dump_size`` bytes.

    Raises :class:`PackError` if the state does not fit; the tracker's
    ``dump_size_packed`` is then reset to 0.
    """
    with tracker.lock:
        if not tracker.initialized:
            tracker.clear_all()
        tracker.update_heap_names()

        num_heaps = tracker.num_heaps
        heaps = tracker.heaps[:num_heaps]
        chunks = tracker.max_blocks // BITMAP_BITS
        first = tracker.first_non_full_bitmap_chunk
        header = DumpHeader(
            num_heaps=num_heaps,
            num_blocks=sum(h.count for h in heaps),
            num_bt_elems=tracker.current_bt_index,
            max_blocks=tracker.max_blocks,
            max_bt_elems=tracker.max_bt_elems,
            first_bit_idx=first,
            saved_bit_idx=chunks - first,
        )

        writer = PackWriter(tracker.dump_size, compress)
        try:
            writer.pack(header.to_bytes())
            for heap in heaps:
                writer.pack(_encode_heap(heap))
            for bins in tracker.hashbins[:num_heaps]:
                writer.pack(_u32_array(bins))
            writer.pack(_u32_array(tracker.tracebins))
            writer.pack(_u32_array(tracker.bitmap[first:]))
            writer.pack(_encode_blocks(tracker.blocks))
            writer.pack(_u64_array(tracker.bt_elems[: tracker.current_bt_index]))
        except PackError:
            tracker.dump_size_packed = 0
            logger.debug(
                "memory tracker dump failed (used %d/%dKB)",
                writer.position >> 10,
                tracker.dump_size >> 10,
            )
            raise

        data = writer.getvalue()
        tracker.dump_size_packed = len(data)
        return data


def _validate(header: DumpHeader) -> None:
    if header.version != MTR_VERSION:
        raise ValueError(f"unsupported dump version {header.version:#x}")
    if header.ptr_size != PTR_SIZE:
        raise ValueError(f"dump was made with {header.ptr_size}-byte pointers")
    if not 0 <= header.num_heaps <= MAX_HEAPS:
        raise ValueError(f"dump holds {header.num_heaps} heaps, at most {MAX_HEAPS} allowed")
    if header.max_blocks <= 0 or header.max_blocks % BITMAP_BITS:
        raise ValueError(f"invalid block capacity {header.max_blocks}")
    chunks = header.max_blocks // BITMAP_BITS
    if header.first_bit_idx + header.saved_bit_idx != chunks or header.first_bit_idx > chunks:
        raise ValueError("bitmap range does not match block capacity")
    if not 0 <= header.max_bt_elems <= TRACE_INDEX_LIMIT:
        raise ValueError(f"invalid trace heap size {header.max_bt_elems}")
    if not 1 <= header.num_bt_elems <= max(header.max_bt_elems, 1):
        raise ValueError(f"invalid trace heap usage {header.num_bt_elems}")


def unpack_dump(tracker: MemoryTracker, data: bytes) -> DumpHeader:
    """Restore a tracker from an uncompressed dump; return the dump's header.

    Heap identities are matched against heaps the tracker already knows;
    unknown heaps keep the numeric identity stored in the dump.
    """
    reader = PackReader(data)
    header = DumpHeader.from_bytes(reader.unpack(DumpHeader.SIZE))
    _validate(header)

    with tracker.lock:
        known: dict[int, Any] = {0: None}
        known.update((_heap_key(h), h) for h, _ in tracker.heap_names)
        known.update((_heap_key(h), h) for h in tracker.heap_ids if h is not None)

        heaps = [_decode_heap(reader.unpack(_HEAP_RECORD_SIZE), known) for _ in range(header.num_heaps)]
        hashbins = [
            list(struct.unpack(f"<{HB_SIZE_TOTAL}I", reader.unpack(HB_SIZE_TOTAL * 4)))
            for _ in range(header.num_heaps)
        ]
        tracebins = list(struct.unpack(f"<{TRACE_BIN_SIZE}I", reader.unpack(TRACE_BIN_SIZE * 4)))
        saved = header.saved_bit_idx
        bitmap_tail = list(struct.unpack(f"<{saved}I", reader.unpack(saved * 4)))
        raw_blocks = reader.unpack(header.max_blocks * _BLOCK.size)
        blocks = [MemBlock(*fields) for fields in _BLOCK.iter_unpack(raw_blocks)]
        n_bt = header.num_bt_elems
        bt_elems = list(struct.unpack(f"<{n_bt}Q", reader.unpack(n_bt * 8)))

        tracker.clear_all()
        tracker.max_blocks = header.max_blocks
        tracker.max_bt_elems = header.max_bt_elems
        tracker.num_heaps = header.num_heaps
        tracker.first_non_full_bitmap_chunk = header.first_bit_idx
        tracker.bitmap = [_FULL_CHUNK] * header.first_bit_idx + bitmap_tail
        tracker.blocks = blocks
        tracker.bt_elems = bt_elems + [0] * (max(header.max_bt_elems, 1) - n_bt)
        tracker.current_bt_index = n_bt
        tracker.tracebins = tracebins
        for idx, (heap, bins) in enumerate(zip(heaps, hashbins)):
            tracker.heaps[idx] = heap
            tracker.heap_ids[idx] = heap.heap_id
            tracker.hashbins[idx] = bins
        tracker.update_heap_names()
    return header