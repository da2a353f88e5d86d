"""Exit-code constants used by the CLI layer."""

from __future__ import annotations

SUCCESS: int = 0
"""Clean exit after a termination signal."""

GENERAL_ERROR: int = 1
"""A known SOSNodeError was caught before the node became ready."""

UNEXPECTED_ERROR: int = 2
"""An unhandled exception escaped the CLI error boundary."""

KEYBOARD_INTERRUPT: int = 130
"""Interrupted before startup completed (128 + SIGINT)."""
