"""Rate-limit detection over agent stderr and exit codes."""

from __future__ import annotations

import re
from dataclasses import dataclass

#: Exit codes that let the loose patterns count as a rate limit.
RATE_LIMIT_EXIT_CODES = frozenset({1, 2, 429})

#: Retry-after values at or above this many seconds are discarded.
MAX_RETRY_AFTER_SECONDS = 3600

#: Longest message kept on a verdict (an ellipsis is appended past it).
MAX_MESSAGE_CHARS = 200

_I = re.IGNORECASE

COMMON_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(
        r"(?:HTTP|status|error|code|response)[\s:]*429"
        r"|429\s*(?:too many|rate limit|error)",
        _I,
    ),
    # The separator avoids matching package names such as "ratelimiter".
    re.compile(r"rate[- ]limit", _I),
    re.compile(r"too many requests", _I),
    re.compile(r"quota[- ]?exceeded", _I),
    re.compile(r"\boverloaded\b", _I),
)

AGENT_PATTERNS: dict[str, tuple[re.Pattern[str], ...]] = {
    "claude": (
        re.compile(r"anthropic.*rate[- ]?limit", _I),
        re.compile(r"API rate limit exceeded", _I),
        re.compile(r"claude.*is currently overloaded", _I),
        re.compile(r"overloaded_error", _I),
        re.compile(r"api[- ]?error.*429", _I),
    ),
    "opencode": (
        re.compile(r"openai.*rate[- ]?limit", _I),
        re.compile(r"tokens per minute", _I),
        re.compile(r"requests per minute", _I),
        re.compile(r"azure.*throttl", _I),
    ),
    "codex": (
        re.compile(r"rate_limit_exceeded", _I),
        re.compile(r"usage limit", _I),
        re.compile(r"tokens per min", _I),
    ),
}

#: Vocabulary that only counts together with an abnormal exit code.
LOOSE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"throttl", _I),
    re.compile(r"limit.*exceeded", _I),
    re.compile(r"exceeded.*limit", _I),
    re.compile(r"capacity", _I),
    re.compile(r"backoff", _I),
)

_RETRY_AFTER_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"retry[- ]?after[:\s]+(-?\d+)\s*s", _I),
    re.compile(r"retry(?:ing)? in[:\s]+(-?\d+)\s*s", _I),
    re.compile(r"try again in[:\s]+(-?\d+)\s*s", _I),
    re.compile(r"wait[:\s]+(-?\d+)\s*s", _I),
    re.compile(r"(-?\d+)\s*seconds?\s*(?:before|until)\s*retry", _I),
)

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class RateLimitVerdict:
    """Result of one detection pass."""

    is_rate_limit: bool
    retry_after_seconds: int | None = None
    message: str | None = None


NOT_RATE_LIMITED = RateLimitVerdict(is_rate_limit=False)


class RateLimitDetector:
    """Classifies agent failures as rate limits.

    Only stderr is examined: stdout routinely contains source code that
    mentions "rate limit" or "429" and would produce false positives.
    Instances hold no state, so one detector can be shared freely.
    """

    def detect(
        self,
        stderr: str,
        stdout: str | None = None,
        exit_code: int | None = None,
        agent_id: str | None = None,
    ) -> RateLimitVerdict:
        del stdout  # never inspected
        if not stderr or not stderr.strip():
            return NOT_RATE_LIMITED

        for pattern in self._patterns_for(agent_id):
            match = pattern.search(stderr)
            if match:
                return RateLimitVerdict(
                    is_rate_limit=True,
                    retry_after_seconds=extract_retry_after(stderr),
                    message=_extract_message(stderr, match),
                )

        if exit_code is not None and exit_code in RATE_LIMIT_EXIT_CODES:
            for pattern in LOOSE_PATTERNS:
                match = pattern.search(stderr)
                if match:
                    return RateLimitVerdict(
                        is_rate_limit=True,
                        retry_after_seconds=extract_retry_after(stderr),
                        message=_extract_message(stderr, match),
                    )

        return NOT_RATE_LIMITED

    def _patterns_for(self, agent_id: str | None) -> list[re.Pattern[str]]:
        patterns: list[re.Pattern[str]] = []
        if agent_id:
            patterns.extend(AGENT_PATTERNS.get(_agent_family(agent_id), ()))
        patterns.extend(COMMON_PATTERNS)
        return patterns


def extract_retry_after(text: str) -> int | None:
    """Return the suggested retry delay in seconds, if a sane one is present.

    The first retry/wait phrase found decides; zero, negative, or
    unreasonably long (>= one hour) values yield ``None``.
    """
    for pattern in _RETRY_AFTER_PATTERNS:
        match = pattern.search(text)
        if match is None:
            continue
        seconds = int(match.group(1))
        if 0 < seconds < MAX_RETRY_AFTER_SECONDS:
            return seconds
        return None
    return None


def _extract_message(text: str, match: re.Match[str]) -> str:
    start = max(0, match.start() - 50)
    end = min(len(text), match.end() + 100)
    message = _WHITESPACE_RE.sub(" ", text[start:end].strip())
    if len(message) > MAX_MESSAGE_CHARS:
        message = message[:MAX_MESSAGE_CHARS] + "..."
    return message


def _agent_family(agent_id: str) -> str:
    """Map ids such as ``"opencode-run"`` or ``"claude/opus"`` to a family."""
    lowered = agent_id.lower()
    for family in AGENT_PATTERNS:
        if lowered.startswith(family):
            return family
    return lowered


#: Shared detector instance.
rate_limit_detector = RateLimitDetector()
