import pytest

from memtrack.callstack import fill_stack


def _recurse(depth, max_size):
    if depth == 0:
        return fill_stack(max_size)
    return _recurse(depth - 1, max_size)


def _capture_here(max_size=50):
    return fill_stack(max_size)


def test_returns_integers_bounded_by_max_size():
    stack = fill_stack(5)
    assert 0 < len(stack) <= 5
    assert all(isinstance(entry, int) and entry >= 0 for entry in stack)


def test_zero_size_gives_empty_stack():
    assert fill_stack(0) == []


def test_negative_size_rejected():
    with pytest.raises(ValueError):
        fill_stack(-1)


def test_negative_skip_rejected():
    with pytest.raises(ValueError):
        fill_stack(4, -1)


def test_deep_recursion_fills_to_limit():
    stack = _recurse(30, 10)
    assert len(stack) == 10
    # all recursive frames stopped at the same instruction share an id
    assert len(set(stack[1:10])) == 1


def test_same_call_site_gives_same_stack():
    results = [_capture_here() for _ in range(3)]
    assert results[0] == results[1] == results[2]


def test_different_call_sites_differ_at_top():
    first = fill_stack(1)
    second = fill_stack(1)
    assert first[0] != second[0]


def test_skip_frames_drops_top_entries():
    full, skipped = fill_stack(10), fill_stack(10, 1)
    assert skipped[: len(full) - 1] == full[1:]


def test_skip_beyond_depth_gives_empty_stack():
    assert fill_stack(10, 100000) == []


def test_inner_stack_contains_outer_tail():
    outer = fill_stack(50)
    inner = _capture_here(50)
    # the helper's frame and its call site sit on top of the outer frames
    assert inner[2:] == outer[1:len(inner) - 1]