"""Per-thread hook for capturing extended call-stack state."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, MutableSequence, Optional

Resolver = Callable[[MutableSequence[Any]], str]
CaptureCallback = Callable[[MutableSequence[Any], Any], "ResolverAndSize"]


@dataclass(frozen=True)
class ResolverAndSize:
    """A resolver for captured stack entries and the number of entries used."""

    resolver: Optional[Resolver] = None
    size: int = 0


@dataclass(frozen=True)
class CallStackContext:
    """A capture callback paired with the context it is called with."""

    capture: Optional[CaptureCallback] = None
    context: Any = None

    def __call__(self, stack: MutableSequence[Any]) -> ResolverAndSize:
        """Run the capture callback on ``stack``; an empty result if none is set."""
        if self.capture is None:
            return ResolverAndSize()
        return self.capture(stack, self.context)


class _ThreadState(threading.local):
    def __init__(self) -> None:
        self.context = CallStackContext()


_state = _ThreadState()


def set_extended_call_stack_capture_context(new_context: CallStackContext) -> CallStackContext:
    """Install ``new_context`` for the current thread and return the previous one."""
    if not isinstance(new_context, CallStackContext):
        raise TypeError(f"expected CallStackContext, got {type(new_context).__name__}")
    previous = _state.context
    _state.context = new_context
    return previous


def capture_extended_call_stack(stack: MutableSequence[Any]) -> ResolverAndSize:
    """Invoke the current thread's capture context on ``stack``."""
    return _state.context(stack)


class ScopedCallStackContext:
    """Installs a capture context for the duration of a ``with`` block.

    The previously installed context is restored on exit and can be
    chained to with :meth:`invoke_prev` while the block is active.
    """

    def __init__(self, capture: Optional[CaptureCallback], context: Any = None):
        self._context = CallStackContext(capture, context)
        self._prev: Optional[CallStackContext] = None

    def __enter__(self) -> "ScopedCallStackContext":
        if self._prev is not None:
            raise RuntimeError("scoped call-stack context is already active")
        self._prev = set_extended_call_stack_capture_context(self._context)
        return self

    def __exit__(self, *args: Any) -> None:
        if self._prev is None:
            raise RuntimeError("scoped call-stack context is not active")
        set_extended_call_stack_capture_context(self._prev)
        self._prev = None

    def invoke_prev(self, stack: MutableSequence[Any]) -> ResolverAndSize:
        """Call the context that was installed before this one."""
        if self._prev is None:
            raise RuntimeError("scoped call-stack context is not active")
        return self._prev(stack)