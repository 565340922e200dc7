import struct

import pytest

from memtrack.packing import PackError, PackReader, PackWriter, compress_runs


def test_compress_empty():
    assert compress_runs(b"") == b""


def test_compress_distinct_bytes_single_group():
    data = bytes(range(15))
    assert compress_runs(data) == b"\xf0" + data


@pytest.mark.parametrize("n", [1, 14, 15, 16, 30, 31, 100])
def test_compress_distinct_bytes_length(n):
    data = bytes(range(n))
    out = compress_runs(data)
    groups = -(-n // 15)
    assert len(out) == n + groups
    assert out[0] >> 4 == min(n, 15)
    assert out[0] & 0x0F == 0


def test_compress_short_run():
    assert compress_runs(b"\x07" * 10) == b"\x19\x07"


def test_compress_medium_run_uses_extra_fill_bytes():
    assert compress_runs(b"a" * 30) == b"\x1ea\x0e\x01"


def test_compress_long_run_uses_triples():
    out = compress_runs(b"z" * 100)
    assert out[:2] == b"\x1ez"
    assert out[2] == 0x0F
    assert out[3] | (out[4] << 8) == 100 - 1 - 14
    assert len(out) == 5


def test_pack_uncompressed_layout():
    w = PackWriter(64)
    w.pack(b"abc")
    assert w.getvalue() == struct.pack("<I", 7) + b"abc"
    assert w.position == 7


def test_pack_compressed_uses_encoding():
    data = b"\x00" * 40 + b"xyz"
    w = PackWriter(256, compress=True)
    w.pack(data)
    body = compress_runs(data)
    assert w.getvalue() == struct.pack("<I", 4 + len(body)) + body


def test_round_trip_several_records():
    records = [b"header..", b"", bytes(range(200)), b"\xff" * 33]
    w = PackWriter(1024)
    for r in records:
        w.pack(r)
    reader = PackReader(w.getvalue())
    assert [reader.unpack(len(r)) for r in records] == records
    assert reader.position == len(w.getvalue())


def test_pack_exact_fit_is_rejected():
    w = PackWriter(8)
    with pytest.raises(PackError):
        w.pack(b"1234")
    assert w.getvalue() == b""


def test_pack_one_byte_spare_fits():
    w = PackWriter(9)
    w.pack(b"1234")
    assert len(w.getvalue()) == 8


def test_append_and_have_space():
    w = PackWriter(10)
    assert w.have_space(10)
    assert w.append(b"abc") == 0
    assert w.append(b"de") == 3
    assert w.have_space(5)
    assert not w.have_space(6)
    with pytest.raises(PackError):
        w.append(b"fghij")
    assert w.getvalue() == b"abcde"


def test_negative_capacity_rejected():
    with pytest.raises(ValueError):
        PackWriter(-1)


def test_reader_size_mismatch():
    w = PackWriter(64)
    w.pack(b"abcd")
    with pytest.raises(PackError):
        PackReader(w.getvalue()).unpack(3)


def test_reader_truncated_body():
    w = PackWriter(64)
    w.pack(b"abcdef")
    with pytest.raises(PackError):
        PackReader(w.getvalue()[:-1]).unpack(6)


def test_reader_truncated_header():
    with pytest.raises(PackError):
        PackReader(b"\x04\x00").unpack(0)
    with pytest.raises(PackError):
        PackReader(b"").unpack(0)