# memtrack

`memtrack` keeps a record of live memory blocks for each heap. It sorts
blocks into power-of-two size classes, stores one copy of each allocation
call stack, can serialise its whole state into a compact dump, and prints
summary and detailed allocation reports.

## Installation

```
pip install .
```

With the test dependencies:

```
pip install ".[test]"
```

## Tracking allocations

```python
from memtrack.tracker import MemoryTracker

tracker = MemoryTracker(
    num_memory_blocks=4096,
    back_trace_elements=8192,
    dump_size_percent=100,
    usable_size=lambda addr: 64,      # how the allocator reports block sizes
    frame_counter=lambda: 0,          # current frame number
    stack_provider=lambda: [0x1000, 0x2000],
)

heap = object()
tracker.register_heap(heap, "main")
tracker.add_block(heap, 0x10000, 64, True)   # returns the block index

tracker.is_addr_valid(0x10010, 8)            # True: the range lies inside a tracked block
for index, block in tracker.iter_blocks(0):
    print(index, hex(block.addr), block.size, tracker.trace_frames(block.trace_id))

tracker.remove_block(heap, 0x10000, 64, False)   # True if the block was found
```

A tracker has a fixed number of block slots (rounded up to a multiple of 32)
and of call-stack elements, set when it is created; working storage is
allocated on first use. At most 8 heaps are tracked. `add_block` raises
`TrackerError` when the tracker runs out of heaps or block slots, and also
when no size is given and no `usable_size` callable was supplied. When the
call-stack table is full, new stacks are recorded with trace id 0.

`add_trace` and `trace_frames` store and look up call stacks directly; equal
stacks share one entry. `register_heap` and `heap_name` keep display names
(up to 15 characters); heaps whose name starts with `*` count as GPU heaps
(`HeapHeader.is_gpu_heap`) and are left out of `print_stats`.

`memtrack.layout` holds the size-class and hash-bin geometry
(`index_by_size`, `hash_slot`, `bin_block_size`, `addr_hash`) and the
encoding of call-stack table headers (`pack_trace_header`,
`unpack_trace_header`).

## Dumps

```python
from memtrack.dump import prepare_full_dump, unpack_dump

blob = prepare_full_dump(tracker, False)
header = unpack_dump(other_tracker, blob)
```

A dump starts with a `DumpHeader`, followed by sections that each carry
their own length: the heap headers, the hash bins, the trace bins, the
occupancy bitmap, the block table and the call-stack table. The dump must fit
in `tracker.dump_size` bytes, which is `dump_size_percent` of the tracker's
working storage; otherwise `prepare_full_dump` raises
`memtrack.packing.PackError`. With `compress=True`, each section is
run-length encoded with `memtrack.packing.compress_runs`.

`unpack_dump` reads uncompressed dumps only. It checks the header's version
and pointer size and raises `ValueError` on a mismatch.

## Reports

```python
from memtrack.report import print_stats, print_detailed_stats

print_stats(tracker, print)
print_detailed_stats(tracker, 0, 1 << 20, 0, 10, 0, print, None)
```

Both functions send each line to the given callable (or to the module's
logger at debug level when it is `None`) and return the lines as a list.
`print_detailed_stats` groups matching blocks by call stack, largest blocks
first, and prints one line for each run of blocks that have the same size.
If you pass a `read_memory` callable, it shows the first 16 bytes of each
block as four words and, when they are all printable, as text.

## Call-stack capture

`memtrack.stackcontext` holds a per-thread capture hook for extended call
stacks (`set_extended_call_stack_capture_context`,
`capture_extended_call_stack`). `ScopedCallStackContext` installs a hook for
the length of a `with` block, lets the block chain to the previous hook with
`invoke_prev`, and restores it afterwards.

`memtrack.callstack.fill_stack` returns identifiers of the frames of the
current Python call stack, innermost first; it can serve as a
`stack_provider`.

## What it does not do

`memtrack` does not hook into an allocator: the caller reports every
allocation and release. It has no command-line tool, and it does not write
dumps to disk; `prepare_full_dump` returns bytes for the caller to store.
Call stacks are reported as numeric frame identifiers, not resolved to
symbol names.