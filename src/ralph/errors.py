"""Base exception for user-facing ralph errors."""

from __future__ import annotations


class RalphError(Exception):
    """Root of every error ralph reports to the user.

    Messages are written for humans; the engine turns them into
    ``error`` events verbatim.
    """
