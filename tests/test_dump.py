import pytest

from memtrack.dump import DumpHeader, prepare_full_dump, unpack_dump
from memtrack.layout import MTR_VERSION
from memtrack.packing import PackError, PackReader, PackWriter
from memtrack.tracker import MemoryTracker


def make_tracker(blocks=64, bt=256, percent=100000):
    tracker = MemoryTracker(
        blocks,
        bt,
        dump_size_percent=percent,
        frame_counter=lambda: 3,
        stack_provider=lambda: [0x10, 0x20],
    )
    tracker.register_heap(1, "main")
    tracker.register_heap(2, "aux")
    return tracker


def populate(tracker):
    tracker.add_block(1, 0x1000, 64, user_heap=True)
    tracker.add_block(1, 0x2000, 200, user_heap=True)
    tracker.add_block(2, 0x3000, 4096, user_heap=True)
    return tracker


def test_header_round_trip():
    header = DumpHeader(num_heaps=2, num_blocks=5, num_bt_elems=9, max_blocks=64,
                        max_bt_elems=256, first_bit_idx=1, saved_bit_idx=1)
    assert DumpHeader.from_bytes(header.to_bytes()) == header


def test_header_defaults_and_size():
    header = DumpHeader()
    assert header.version == MTR_VERSION
    assert header.ptr_size == 8
    assert len(header.to_bytes()) == 32
    assert DumpHeader.SIZE == 32


def test_header_wrong_length():
    with pytest.raises(ValueError):
        DumpHeader.from_bytes(b"\0" * 5)


def test_dump_header_record_matches_tracker():
    tracker = populate(make_tracker())
    data = prepare_full_dump(tracker)
    header = DumpHeader.from_bytes(PackReader(data).unpack(DumpHeader.SIZE))
    assert header.num_heaps == tracker.num_heaps == 2
    assert header.num_blocks == 3
    assert header.max_blocks == tracker.max_blocks
    assert header.num_bt_elems == tracker.current_bt_index
    assert tracker.dump_size_packed == len(data)


def test_round_trip_restores_state():
    source = populate(make_tracker())
    data = prepare_full_dump(source)
    target = make_tracker()
    unpack_dump(target, data)
    assert target.num_heaps == source.num_heaps
    assert target.heaps[: target.num_heaps] == source.heaps[: source.num_heaps]
    assert target.blocks == source.blocks
    assert target.bitmap == source.bitmap
    assert target.tracebins == source.tracebins
    assert target.first_non_full_bitmap_chunk == source.first_non_full_bitmap_chunk
    trace_id = source.blocks[31].trace_id
    assert target.trace_frames(trace_id) == source.trace_frames(trace_id) == (0x10, 0x20)


def test_round_trip_allows_further_tracking():
    source = populate(make_tracker())
    target = make_tracker()
    unpack_dump(target, prepare_full_dump(source))
    assert target.is_addr_valid(0x2000, 10)
    assert target.remove_block(1, 0x2000, user_size=200)
    assert not target.remove_block(1, 0x2000, user_size=200)
    assert target.heaps[0].count == 1


def test_round_trip_into_different_capacity():
    source = populate(make_tracker())
    target = MemoryTracker(300, 64)
    unpack_dump(target, prepare_full_dump(source))
    assert target.max_blocks == source.max_blocks
    assert len(target.blocks) == source.max_blocks
    assert sum(h.count for h in target.heaps[: target.num_heaps]) == 3


def test_round_trip_after_removal():
    source = populate(make_tracker())
    source.remove_block(1, 0x1000, user_size=64)
    target = make_tracker()
    unpack_dump(target, prepare_full_dump(source))
    assert target.bitmap == source.bitmap
    assert not target.is_addr_valid(0x1000, 1)


def test_dump_too_small_fails():
    tracker = populate(make_tracker(percent=10))
    with pytest.raises(PackError):
        prepare_full_dump(tracker)
    assert tracker.dump_size_packed == 0


def test_compressed_dump_is_smaller_and_not_readable():
    tracker = populate(make_tracker())
    plain = prepare_full_dump(tracker)
    packed = prepare_full_dump(tracker, compress=True)
    assert len(packed) < len(plain)
    with pytest.raises(PackError):
        unpack_dump(make_tracker(), packed)


def test_wrong_version_rejected():
    writer = PackWriter(1000)
    writer.pack(DumpHeader(version=MTR_VERSION + 1, max_blocks=32, saved_bit_idx=1,
                           num_bt_elems=1).to_bytes())
    with pytest.raises(ValueError):
        unpack_dump(make_tracker(), writer.getvalue())


def test_truncated_dump_rejected():
    data = prepare_full_dump(populate(make_tracker()))
    target = make_tracker()
    with pytest.raises(PackError):
        unpack_dump(target, data[:100])