"""
Test Fixtures Package

Shared test utilities and helpers for consistent testing across all modules.
"""

from .request_factory import RequestFactory
from .sse_frames import answers, drain_sink, iterate, kinds, parse_frames

__all__ = ["RequestFactory", "answers", "drain_sink", "iterate", "kinds", "parse_frames"]
