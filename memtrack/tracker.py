"""Bookkeeping of live allocations per heap, size class and call stack."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional, Sequence

from .layout import (
    BITMAP_BITS,
    BLK_POW2_ELEMENTS,
    HASH_BIN_OFFSET,
    HASH_BIN_SIZE,
    HB_SIZE_TOTAL,
    MAX_HEAPS,
    MAX_UNWIND_DEPTH,
    STOP_INDEX,
    TRACE_BIN_SIZE,
    TRACE_INDEX_LIMIT,
    hash_slot,
    index_by_size,
    pack_trace_header,
    unpack_trace_header,
)

logger = logging.getLogger(__name__)

HEAP_NAME_LEN = 16
MEM_BLOCK_BYTES = 24
BITMAP_CHUNK_BYTES = 4
TRACE_ELEM_BYTES = 8
MIN_DUMP_SIZE_PERCENT = 10

STACK_END = 0xFFFFFFFFFFFFFFFF
_FULL_CHUNK = (1 << BITMAP_BITS) - 1
_UINTPTR = 0xFFFFFFFFFFFFFFFF


class TrackerError(Exception):
    """Raised when the tracker runs out of room or lacks information it needs."""


@dataclass
class MemBlock:
    """One tracked allocation, linked into a hash chain by ``next_index``."""

    addr: int = 0
    size: int = 0
    next_index: int = STOP_INDEX
    trace_id: int = 0
    timestamp: int = 0


@dataclass
class BlockHeader:
    """Totals for one size class of one heap."""

    count: int = 0
    allocated: int = 0


@dataclass
class HeapHeader:
    """Totals for one heap, with a breakdown by size class."""

    heap_id: Any = None
    allocated: int = 0
    count: int = 0
    name: str = ""
    block_headers: list[BlockHeader] = field(
        default_factory=lambda: [BlockHeader() for _ in range(BLK_POW2_ELEMENTS)]
    )

    def is_gpu_heap(self) -> bool:
        """GPU heaps are registered with names starting with ``*``."""
        return self.name.startswith("*")


def _align(value: int, alignment: int) -> int:
    return (value + alignment - 1) & ~(alignment - 1)


def _first_free_bit(chunk: int) -> int:
    """Return the highest clear bit of a bitmap chunk."""
    return (~chunk & _FULL_CHUNK).bit_length() - 1


class MemoryTracker:
    """Tracks allocations reported by heaps, grouped by heap and size class.

    Working storage is fixed at construction and allocated on first use.
    ``usable_size`` maps an address to its usable size when the caller does
    not supply one; ``frame_counter`` stamps each block; ``stack_provider``,
    if given, returns the call stack recorded with each block.
    """

    def __init__(
        self,
        num_memory_blocks: int,
        back_trace_elements: int,
        dump_size_percent: int = MIN_DUMP_SIZE_PERCENT,
        usable_size: Optional[Callable[[int], int]] = None,
        frame_counter: Optional[Callable[[], int]] = None,
        stack_provider: Optional[Callable[[], Sequence[int]]] = None,
    ):
        if num_memory_blocks <= 0:
            raise ValueError(f"tracker needs at least one block, got {num_memory_blocks}")
        if back_trace_elements < 0:
            raise ValueError(f"negative trace heap size: {back_trace_elements}")
        max_bt = _align(back_trace_elements, 32)
        if max_bt > TRACE_INDEX_LIMIT:
            raise ValueError(f"trace heap of {max_bt} elements exceeds 24-bit indexing")

        self.max_blocks = _align(num_memory_blocks, BITMAP_BITS)
        self.max_bt_elems = max_bt
        self.dump_size_percent = max(dump_size_percent, MIN_DUMP_SIZE_PERCENT)
        self.lock = threading.RLock()

        self._usable_size = usable_size
        self._frame_counter = frame_counter or (lambda: 0)
        self._stack_provider = stack_provider

        self.heap_names: list[tuple[Any, str]] = []
        self.require_init = True

        self.num_heaps = 0
        self.first_non_full_bitmap_chunk = 0
        self.current_bt_index = 1
        self.saved_bt_index = 1
        self.dump_size = 0
        self.dump_size_packed = 0
        self.heap_ids: list[Any] = []
        self.heaps: list[HeapHeader] = []
        self.hashbins: list[list[int]] = []
        self.tracebins: list[int] = []
        self.bitmap: list[int] = []
        self.blocks: list[MemBlock] = []
        self.bt_elems: list[int] = []

    @property
    def initialized(self) -> bool:
        return not self.require_init

    def _ensure_init(self) -> None:
        if not self.require_init:
            return
        with self.lock:
            if not self.require_init:
                return
            chunks = self.max_blocks // BITMAP_BITS
            self.bitmap = [0] * chunks
            self.blocks = [MemBlock() for _ in range(self.max_blocks)]
            self.bt_elems = [0] * max(self.max_bt_elems, 1)
            self.current_bt_index = 1
            self.saved_bt_index = self.current_bt_index
            total = (
                self.max_blocks * MEM_BLOCK_BYTES
                + chunks * BITMAP_CHUNK_BYTES
                + self.max_bt_elems * TRACE_ELEM_BYTES
            )
            self.dump_size = total * self.dump_size_percent // 100
            self.dump_size_packed = 0
            self.require_init = False
            self.clear_all()

    def clear_all(self) -> None:
        """Forget every heap and block; block #0 stays reserved."""
        self._ensure_init()
        with self.lock:
            self.num_heaps = 0
            self.first_non_full_bitmap_chunk = 0
            self.heap_ids = [None] * MAX_HEAPS
            self.heaps = [HeapHeader() for _ in range(MAX_HEAPS)]
            self.hashbins = [[STOP_INDEX] * HB_SIZE_TOTAL for _ in range(MAX_HEAPS)]
            self.tracebins = [STOP_INDEX] * TRACE_BIN_SIZE
            self.bitmap = [0] * len(self.bitmap)
            self.blocks = [MemBlock() for _ in range(self.max_blocks)]
            self.bitmap[0] = 1

    def register_heap(self, heap: Any, name: str) -> None:
        """Remember a display name for ``heap``; the first registration wins."""
        if any(known == heap for known, _ in self.heap_names):
            return
        if len(self.heap_names) < MAX_HEAPS:
            self.heap_names.append((heap, name[: HEAP_NAME_LEN - 1]))

    def heap_name(self, heap: Any) -> str:
        """Return the registered name of ``heap``, or an empty string."""
        return next((name for known, name in self.heap_names if known == heap), "")

    def update_heap_names(self) -> None:
        """Copy registered names into the headers of active heaps."""
        for header in self.heaps[: self.num_heaps]:
            header.name = self.heap_name(header.heap_id)

    def _find_heap_index(self, heap: Any) -> int:
        return next(
            (i for i, known in enumerate(self.heap_ids[: self.num_heaps]) if known == heap),
            self.num_heaps,
        )

    def add_trace(self, stack: Sequence[int]) -> int:
        """Store a call stack, sharing identical ones; return its id or 0 if full."""
        self._ensure_init()
        frames: list[int] = []
        for entry in stack:
            entry &= _UINTPTR
            if entry == STACK_END or len(frames) >= MAX_UNWIND_DEPTH:
                break
            frames.append(entry)
        depth = len(frames)

        h = 0
        for entry in frames:
            h = (h >> 1) ^ entry
        h = ((((h >> 12) ^ h) >> 4) ^ h) & (TRACE_BIN_SIZE - 1)

        with self.lock:
            bt_idx = self.tracebins[h]
            while bt_idx != STOP_INDEX:
                entry_depth, next_idx = unpack_trace_header(self.bt_elems[bt_idx])
                if (
                    entry_depth == depth
                    and self.bt_elems[bt_idx + 1 : bt_idx + 1 + depth] == frames
                ):
                    return bt_idx
                bt_idx = next_idx

            start = self.current_bt_index
            if start + depth + 1 < self.max_bt_elems:
                self.bt_elems[start + 1 : start + 1 + depth] = frames
                self.bt_elems[start] = pack_trace_header(depth, self.tracebins[h])
                self.tracebins[h] = start
                self.current_bt_index += depth + 1
                return start
            return 0

    def trace_frames(self, trace_id: int) -> tuple[int, ...]:
        """Return the stack stored under ``trace_id``; empty for id 0."""
        if trace_id == STOP_INDEX or self.require_init:
            return ()
        if not 0 < trace_id < self.current_bt_index:
            raise TrackerError(f"unknown trace id {trace_id}")
        depth, _ = unpack_trace_header(self.bt_elems[trace_id])
        return tuple(self.bt_elems[trace_id + 1 : trace_id + 1 + depth])

    def _usable(self, addr: int) -> int:
        if self._usable_size is None:
            raise TrackerError(
                f"usable size of {addr:#x} is unknown; pass it explicitly"
            )
        return self._usable_size(addr)

    def add_block(self, heap: Any, addr: int, size: int, user_heap: bool = False) -> Optional[int]:
        """Record an allocation; return its block index, or None for a null address."""
        if not addr:
            return None
        if size < 0:
            raise ValueError(f"negative block size: {size}")
        self._ensure_init()
        stack = list(self._stack_provider()) if self._stack_provider else None

        with self.lock:
            trace_id = self.add_trace(stack) if stack is not None else 0
            usable = size if user_heap else self._usable(addr)
            size_idx = index_by_size(usable)

            heap_idx = self._find_heap_index(heap)
            if heap_idx == self.num_heaps and self.num_heaps + 1 >= MAX_HEAPS:
                raise TrackerError("memory tracker run out of heaps")

            chunk_idx = self.first_non_full_bitmap_chunk
            while chunk_idx < len(self.bitmap) and self.bitmap[chunk_idx] == _FULL_CHUNK:
                chunk_idx += 1
            if chunk_idx >= len(self.bitmap):
                raise TrackerError("memory tracker run out of blocks")

            if heap_idx == self.num_heaps:
                self.num_heaps += 1
                self.heap_ids[heap_idx] = heap
                self.heaps[heap_idx].heap_id = heap

            self.first_non_full_bitmap_chunk = chunk_idx
            bit = _first_free_bit(self.bitmap[chunk_idx])
            block_idx = chunk_idx * BITMAP_BITS + bit
            self.bitmap[chunk_idx] |= 1 << bit

            header = self.heaps[heap_idx]
            header.allocated += size
            header.count += 1
            bin_header = header.block_headers[size_idx]
            bin_header.allocated += size
            bin_header.count += 1

            slot = hash_slot(addr, size_idx)
            self.blocks[block_idx] = MemBlock(
                addr=addr,
                size=size,
                next_index=self.hashbins[heap_idx][slot],
                trace_id=trace_id,
                timestamp=self._frame_counter(),
            )
            self.hashbins[heap_idx][slot] = block_idx
            return block_idx

    def remove_block(self, heap: Any, addr: int, user_size: int = 0, anywhere: bool = False) -> bool:
        """Forget an allocation; return True if it was found.

        With ``anywhere`` every heap is searched, starting from the first.
        """
        if not addr or self.require_init:
            return False
        with self.lock:
            usable = user_size if user_size else self._usable(addr)
            size_idx = index_by_size(usable)
            slot = hash_slot(addr, size_idx)

            heap_idx = 0 if anywhere else self._find_heap_index(heap)
            block_idx = prev_idx = STOP_INDEX
            while heap_idx < self.num_heaps:
                prev_idx = STOP_INDEX
                block_idx = self.hashbins[heap_idx][slot]
                while block_idx != STOP_INDEX and self.blocks[block_idx].addr != addr:
                    prev_idx = block_idx
                    block_idx = self.blocks[block_idx].next_index
                if block_idx != STOP_INDEX or not anywhere:
                    break
                heap_idx += 1

            if heap_idx >= self.num_heaps or block_idx == STOP_INDEX:
                return False

            block = self.blocks[block_idx]
            header = self.heaps[heap_idx]
            header.allocated -= block.size
            header.count -= 1
            bin_header = header.block_headers[size_idx]
            bin_header.allocated -= block.size
            bin_header.count -= 1

            if prev_idx != STOP_INDEX:
                self.blocks[prev_idx].next_index = block.next_index
            else:
                self.hashbins[heap_idx][slot] = block.next_index
            block.next_index = STOP_INDEX
            block.addr = 0
            block.size = 0

            chunk_idx, bit = divmod(block_idx, BITMAP_BITS)
            self.bitmap[chunk_idx] &= ~(1 << bit) & _FULL_CHUNK
            if self.first_non_full_bitmap_chunk > chunk_idx:
                self.first_non_full_bitmap_chunk = chunk_idx
            return True

    def iter_blocks(self, heap_index: int) -> Iterator[tuple[int, MemBlock]]:
        """Yield ``(block_index, block)`` for every block of a heap, by size class.

        The caller holds :attr:`lock` if other threads may modify the tracker.
        """
        if not 0 <= heap_index < self.num_heaps:
            raise IndexError(f"heap index {heap_index} out of range 0..{self.num_heaps - 1}")
        bins = self.hashbins[heap_index]
        for offset, bin_size in zip(HASH_BIN_OFFSET, HASH_BIN_SIZE):
            for slot in range(offset, offset + bin_size):
                block_idx = bins[slot]
                while block_idx != STOP_INDEX:
                    block = self.blocks[block_idx]
                    yield block_idx, block
                    block_idx = block.next_index

    def is_addr_valid(self, addr: int, size: int) -> bool:
        """Return True if ``size`` bytes at ``addr`` lie inside a tracked block.

        Scans every block, so it is slow.
        """
        if not addr or self.require_init:
            return False
        end = addr + size
        with self.lock:
            found = any(
                block.addr <= addr and block.addr + block.size > end
                for heap_idx in range(self.num_heaps)
                if self.heaps[heap_idx].count > 0
                for _, block in self.iter_blocks(heap_idx)
            )
        if not found:
            logger.error("xmb addr not found %#x", addr)
        return found