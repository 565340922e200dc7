"""Size classes, hash-bin geometry and trace-header encoding of the tracker."""

from itertools import accumulate

BLK_POW2_LOW = 4
BLK_POW2_HIGH = 24
BLK_POW2_ELEMENTS = BLK_POW2_HIGH - BLK_POW2_LOW

MTR_VERSION = 0x3300
MAX_UNWIND_DEPTH = 50
MAX_HEAPS = 8

BITMAP_BITS = 32
TRACE_BIN_SIZE = 1024
STOP_INDEX = 0

HB_SZ_64K = 1024
HB_SZ_4K = 128
HB_SZ_256 = 64
HB_SZ_64 = 16
HB_SZ_8 = 1

HASH_BIN_SIZE: tuple[int, ...] = (
    (HB_SZ_64K,) * 6
    + (HB_SZ_4K,) * 3
    + (HB_SZ_256,) * 2
    + (HB_SZ_64,) * 5
    + (HB_SZ_8,) * 4
)
HASH_BIN_OFFSET: tuple[int, ...] = tuple(accumulate(HASH_BIN_SIZE[:-1], initial=0))
HB_SIZE_TOTAL = sum(HASH_BIN_SIZE)

TRACE_DEPTH_LIMIT = 0xFF
TRACE_INDEX_LIMIT = 0xFFFFFF

_UINT32 = 0xFFFFFFFF
_UINTPTR = 0xFFFFFFFFFFFFFFFF


def _log2i(value: int) -> int:
    return value.bit_length() - 1


def index_by_size(size: int) -> int:
    """Return the size-class index of a block of ``size`` bytes.

    A zero size maps to ``BLK_POW2_LOW``, as the tracker has always done.
    """
    if size < 0:
        raise ValueError(f"negative block size: {size}")
    if size == 0:
        return BLK_POW2_LOW
    if size > _UINT32:
        raise ValueError(f"block size {size} does not fit in 32 bits")
    pow2 = _log2i(size)
    return min(max(pow2, BLK_POW2_LOW), BLK_POW2_HIGH - 1) - BLK_POW2_LOW


def addr_hash(addr: int) -> int:
    """Return the 32-bit hash of an address."""
    v = addr & _UINTPTR
    return ((((v >> 16) ^ v) >> 8) ^ v) & _UINT32


def _check_bin(bin_no: int) -> None:
    if not 0 <= bin_no < BLK_POW2_ELEMENTS:
        raise ValueError(f"size class {bin_no} out of range 0..{BLK_POW2_ELEMENTS - 1}")


def hash_slot(addr: int, size_idx: int) -> int:
    """Return the hash-bin slot for ``addr`` within size class ``size_idx``."""
    _check_bin(size_idx)
    bin_size = HASH_BIN_SIZE[size_idx]
    return HASH_BIN_OFFSET[size_idx] + (addr_hash(addr) & (bin_size - 1))


def bin_block_size(bin_no: int) -> int:
    """Return the lower bound in bytes of size class ``bin_no``."""
    _check_bin(bin_no)
    return 1 << (bin_no + BLK_POW2_LOW)


def pack_trace_header(depth: int, next_index: int) -> int:
    """Encode a trace-heap header: depth in the top byte, next index below."""
    if not 0 <= depth <= TRACE_DEPTH_LIMIT:
        raise ValueError(f"trace depth {depth} out of range")
    if not 0 <= next_index <= TRACE_INDEX_LIMIT:
        raise ValueError(f"trace index {next_index} out of range")
    return (depth << 24) | next_index


def unpack_trace_header(entry: int) -> tuple[int, int]:
    """Decode a trace-heap header into ``(depth, next_index)``."""
    return (entry >> 24) & TRACE_DEPTH_LIMIT, entry & TRACE_INDEX_LIMIT