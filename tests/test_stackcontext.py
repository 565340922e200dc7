import threading

import pytest

from memtrack.stackcontext import (
    CallStackContext,
    ResolverAndSize,
    ScopedCallStackContext,
    capture_extended_call_stack,
    set_extended_call_stack_capture_context,
)


def _resolver(stack):
    return " ".join(str(x) for x in stack)


def _filling_capture(stack, context):
    stack[: len(context)] = context
    return ResolverAndSize(_resolver, len(context))


def test_default_context_captures_nothing():
    result = capture_extended_call_stack([None] * 4)
    assert result == ResolverAndSize(None, 0)


def test_empty_context_call_returns_empty_pair():
    assert CallStackContext()([1, 2]) == ResolverAndSize()


def test_context_passes_stack_and_context_to_callback():
    stack = [None] * 5
    ctx = CallStackContext(_filling_capture, ["a", "b"])
    result = ctx(stack)
    assert result.size == 2
    assert stack[:2] == ["a", "b"]
    assert result.resolver(stack[: result.size]) == "a b"


def test_set_returns_previous_and_installs_new():
    first = CallStackContext(_filling_capture, [7])
    original = set_extended_call_stack_capture_context(first)
    try:
        stack = [None] * 3
        assert capture_extended_call_stack(stack).size == 1
        assert stack[0] == 7
        second = CallStackContext()
        assert set_extended_call_stack_capture_context(second) is first
    finally:
        set_extended_call_stack_capture_context(original)
    assert capture_extended_call_stack([None]).size == 0


def test_set_rejects_non_context():
    with pytest.raises(TypeError):
        set_extended_call_stack_capture_context(lambda s, c: None)


def test_context_is_per_thread():
    results = []
    with ScopedCallStackContext(_filling_capture, [1, 2, 3]):
        thread = threading.Thread(
            target=lambda: results.append(capture_extended_call_stack([None] * 4))
        )
        thread.start()
        thread.join()
        assert capture_extended_call_stack([None] * 4).size == 3
    assert results == [ResolverAndSize(None, 0)]


def test_scoped_restores_previous_on_exit():
    with ScopedCallStackContext(_filling_capture, ["x"]):
        assert capture_extended_call_stack([None] * 2).size == 1
    assert capture_extended_call_stack([None] * 2) == ResolverAndSize()


def test_scoped_restores_after_exception():
    with pytest.raises(KeyError):
        with ScopedCallStackContext(_filling_capture, ["x"]):
            raise KeyError("boom")
    assert capture_extended_call_stack([None]) == ResolverAndSize()


def test_nested_scopes_chain_with_invoke_prev():
    def outer_then_inner(stack, context):
        scope, tag = context
        prev = scope.invoke_prev(stack)
        stack[prev.size] = tag
        return ResolverAndSize(_resolver, prev.size + 1)

    with ScopedCallStackContext(_filling_capture, ["outer"]):
        context = [None, "inner"]
        inner = ScopedCallStackContext(outer_then_inner, context)
        context[0] = inner
        with inner:
            stack = [None] * 4
            result = capture_extended_call_stack(stack)
            assert result.size == 2
            assert result.resolver(stack[: result.size]) == "outer inner"
        assert capture_extended_call_stack([None] * 4).size == 1


def test_invoke_prev_outside_scope_raises():
    scope = ScopedCallStackContext(_filling_capture, [])
    with pytest.raises(RuntimeError):
        scope.invoke_prev([None])


def test_reentering_active_scope_raises():
    scope = ScopedCallStackContext(None)
    with scope:
        with pytest.raises(RuntimeError):
            scope.__enter__()
    assert capture_extended_call_stack([None]) == ResolverAndSize()


def test_scope_with_no_callback_disables_capture():
    with ScopedCallStackContext(_filling_capture, ["a"]):
        with ScopedCallStackContext(None) as scope:
            assert capture_extended_call_stack([None] * 2) == ResolverAndSize()
            assert scope.invoke_prev([None] * 2).size == 1