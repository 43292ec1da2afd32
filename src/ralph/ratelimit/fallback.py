"""Fallback agent resolution for rate-limited primaries."""

from __future__ import annotations

from collections.abc import Mapping


class FallbackResolver:
    """Maps a rate-limited agent/model id to its configured fallback.

    Per-invocation *overrides* (``--fallback``) take precedence over the
    *configured* mapping from the config file.  No defaults are shipped:
    an unmapped agent simply waits out its backoff.
    """

    def __init__(
        self,
        configured: Mapping[str, str] | None = None,
        overrides: Mapping[str, str] | None = None,
    ) -> None:
        self._configured = dict(configured or {})
        self._overrides = dict(overrides or {})

    def get_fallback_agent(self, agent_id: str) -> str | None:
        fallback = self._overrides.get(agent_id) or self._configured.get(agent_id)
        if not fallback or fallback == agent_id:
            return None
        return fallback


def parse_fallback_pairs(pairs: tuple[str, ...] | list[str]) -> dict[str, str]:
    """Parse ``PRIMARY=FALLBACK`` strings into a mapping.

    Raises:
        ValueError: When a pair is missing ``=`` or either side is empty.
    """
    mapping: dict[str, str] = {}
    for pair in pairs:
        primary, sep, fallback = pair.partition("=")
        primary, fallback = primary.strip(), fallback.strip()
        if not sep or not primary or not fallback:
            msg = f"Invalid fallback mapping {pair!r}: expected PRIMARY=FALLBACK"
            raise ValueError(msg)
        mapping[primary] = fallback
    return mapping
