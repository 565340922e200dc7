"""Capture of the current call stack as a list of frame identifiers."""

from __future__ import annotations

import sys
from types import FrameType
from typing import Iterator, Optional

_ADDR_BITS = 48
_OFFSET_BITS = 16
_ADDR_MASK = (1 << _ADDR_BITS) - 1
_OFFSET_MASK = (1 << _OFFSET_BITS) - 1


def _frame_id(frame: FrameType) -> int:
    """Return an integer naming the code location a frame is executing.

    Two frames stopped at the same instruction of the same code object get
    the same identifier, so identical call paths produce identical stacks.
    """
    return ((id(frame.f_code) & _ADDR_MASK) << _OFFSET_BITS) | (frame.f_lasti & _OFFSET_MASK)


def _walk(frame: Optional[FrameType]) -> Iterator[FrameType]:
    while frame is not None:
        yield frame
        frame = frame.f_back


def fill_stack(max_size: int, skip_frames: int = 0) -> list[int]:
    """Return up to ``max_size`` identifiers of the current call stack.

    The first entry is the caller of this function; ``skip_frames`` drops
    that many entries from the top before collecting. The innermost frame
    comes first.
    """
    if max_size < 0:
        raise ValueError(f"negative stack size: {max_size}")
    if skip_frames < 0:
        raise ValueError(f"negative frame skip: {skip_frames}")
    if max_size == 0:
        return []
    stack: list[int] = []
    for position, frame in enumerate(_walk(sys._getframe(1))):
        if position < skip_frames:
            continue
        stack.append(_frame_id(frame))
        if len(stack) >= max_size:
            break
    return stack