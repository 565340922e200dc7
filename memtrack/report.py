"""Human-readable statistics of a memory tracker."""

from __future__ import annotations

import logging
import struct
from collections import defaultdict
from typing import Callable, Iterator, Optional, Sequence

from .layout import bin_block_size
from .tracker import MemBlock, MemoryTracker

logger = logging.getLogger(__name__)

Log = Callable[[str], None]
ReadMemory = Callable[[int], Optional[bytes]]

_SAMPLE_BYTES = 16
_SAMPLE_WORDS = struct.Struct("<4I")
_MAX_SHOWN_BLOCKS = 40000
_U32 = 0xFFFFFFFF


def _emitter(log: Optional[Log]) -> tuple[list[str], Log]:
    lines: list[str] = []
    sink = log if log is not None else logger.debug

    def emit(line: str) -> None:
        lines.append(line)
        sink(line)

    return lines, emit


def _frame(tracker: MemoryTracker) -> int:
    return tracker._frame_counter() & _U32


def print_stats(tracker: MemoryTracker, log: Optional[Log] = None) -> list[str]:
    """Report totals per CPU heap and per busy size class; return the lines."""
    lines, emit = _emitter(log)
    with tracker.lock:
        tracker.update_heap_names()
        nblocks = 0
        allocated = 0
        for header in tracker.heaps[: tracker.num_heaps]:
            if header.is_gpu_heap():
                continue
            nblocks += header.count
            allocated += header.allocated
            emit(f"\nheap {header.name} alloc={header.allocated >> 10} KB in {header.count} blocks")
            for bin_no, bh in enumerate(header.block_headers):
                if bh.allocated > 1024 and bh.count > 0:
                    emit(
                        f"bin {bin_block_size(bin_no):8d} alloc={bh.allocated >> 10} KB "
                        f"in {bh.count} blocks"
                    )
        emit(f"Summary for CPU heaps: {allocated >> 10} KB in {nblocks} blocks, frame {_frame(tracker)}")
    return lines


def _is_text_byte(b: int) -> bool:
    return 0x21 <= b <= 0x7E


def format_block_line(size: int, addr: int, count: int,
                      contents: Optional[bytes] = None) -> Optional[str]:
    """Format one run of equal-sized blocks; None when ``count`` is below 1.

    ``contents`` holds the first bytes of the block; when given (and the
    address is not null) the first 16 bytes are shown as four words and,
    if all are printable, as text.
    """
    if count < 1:
        return None
    head = f"blk {size:010d} | {addr:#x}"
    if count > 1:
        head += f" x {count}"
    if not addr or contents is None:
        return head
    sample = bytes(contents)[:_SAMPLE_BYTES]
    if len(sample) < _SAMPLE_BYTES:
        raise ValueError(f"block contents need {_SAMPLE_BYTES} bytes, got {len(sample)}")
    words = " ".join(f"{w:08x}" for w in _SAMPLE_WORDS.unpack(sample))
    text = sample.decode("ascii") if all(_is_text_byte(b) for b in sample) else ""
    return f"{head} |  {words} | {text} "


def _format_stack(frames: Sequence[int]) -> str:
    return "\n".join(f"    {frame:#018x}" for frame in frames)


def _matches(block: MemBlock, min_size: int, max_size: int, min_frame: int) -> bool:
    return min_size <= block.size <= max_size and block.timestamp >= min_frame


def _group_lines(group: Sequence[tuple[int, MemBlock]], show_lines: int,
                 read_memory: Optional[ReadMemory]) -> Iterator[str]:
    runs: list[list[int]] = []
    shown = 0
    last: Optional[list[int]] = None
    for _, block in group:
        if shown >= show_lines:
            break
        if last is None or block.size != last[0]:
            if last is not None:
                runs.append(last)
            last = [block.size, block.addr, 1]
            shown += 1
        else:
            last[2] += 1
    if last is not None:
        runs.append(last)
    for size, addr, count in runs:
        contents = read_memory(addr) if read_memory is not None and addr else None
        line = format_block_line(size, addr, count, contents)
        if line is not None:
            yield line


def print_detailed_stats(tracker: MemoryTracker, min_size: int, max_size: int,
                         min_alloc_kb: int, show_lines: int, min_frame: int = 0,
                         log: Optional[Log] = None,
                         read_memory: Optional[ReadMemory] = None) -> list[str]:
    """Report matching blocks grouped by call stack; return the lines.

    Blocks match when their size is within ``min_size..max_size`` and they
    were stamped no earlier than ``min_frame``. A stack is shown only if its
    matching blocks hold at least ``min_alloc_kb`` KB; at most
    ``show_lines`` runs of equal-sized blocks are listed for it, largest first.
    """
    lines, emit = _emitter(log)
    min_alloc = min_alloc_kb << 10
    with tracker.lock:
        tracker.update_heap_names()
        emit(f"Show blocks >= {min_size} && <= {max_size} for frame {_frame(tracker)}:\n")
        for heap_idx in range(tracker.num_heaps):
            header = tracker.heaps[heap_idx]
            emit(f"heap {header.name} alloc={header.allocated >> 10} KB in {header.count} blocks. ")

            matched: dict[int, list[tuple[int, MemBlock]]] = defaultdict(list)
            totals: dict[int, list[int]] = defaultdict(lambda: [0, 0])
            total_matched = 0
            for block_idx, block in tracker.iter_blocks(heap_idx):
                total = totals[block.trace_id]
                total[0] += 1
                total[1] += block.size
                if _matches(block, min_size, max_size, min_frame):
                    total_matched += 1
                    group = matched[block.trace_id]
                    if len(group) <= _MAX_SHOWN_BLOCKS:
                        group.append((block_idx, block))
            emit(f"total matching blocks {total_matched} ")

            for trace_id in sorted(matched):
                group = matched[trace_id]
                shown_size = sum(block.size for _, block in group)
                if shown_size < min_alloc:
                    continue
                group.sort(key=lambda item: item[1].size, reverse=True)
                total_cnt, total_size = totals[trace_id]
                emit(
                    f"\n\n{(shown_size >> 10) & _U32} KB ({len(group)} blocks) / "
                    f"{(total_size >> 10) & _U32} KB ({total_cnt} blocks) (matched/total) "
                )
                stack_text = _format_stack(tracker.trace_frames(trace_id))
                emit(f"Blocks for stack trace {trace_id}\n{stack_text}:\n")
                for line in _group_lines(group, show_lines, read_memory):
                    emit(line)
        emit("--------")
    return lines