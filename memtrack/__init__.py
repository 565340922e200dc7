"""Allocation tracking with per-heap size bins, call-stack deduplication, dumps and reports."""

__version__ = "0.1.0"
__all__ = ["callstack", "dump", "layout", "packing", "report", "stackcontext", "tracker"]