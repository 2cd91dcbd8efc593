"""Pattern matching and context extraction for signals.

Keyword and phrase signals are matched as case-insensitive literals, regex
signals as case-insensitive regular expressions. Spans are always located in
the original content so that context windows line up with what the user
actually wrote.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from functools import lru_cache

from chat_signal_monitor.detector.models import SignalDefinition, SignalKind

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_CHARS = 50

# Custom matchers decide on their own whether a signal fires; they cannot
# report a span, so context falls back to the full content.
CustomMatcher = Callable[[SignalDefinition, str], bool]


class SignalValidationError(ValueError):
    """Base exception for signals rejected at the API boundary."""


class EmptyPatternError(SignalValidationError):
    """Raised when a signal has an empty pattern."""


class InvalidPatternError(SignalValidationError):
    """Raised when a regex signal's pattern does not compile."""

    def __init__(self, pattern: str, reason: str) -> None:
        super().__init__(f"Invalid regex pattern {pattern!r}: {reason}")
        self.pattern = pattern
        self.reason = reason


@lru_cache(maxsize=1024)
def _compile(pattern: str, literal: bool) -> re.Pattern[str]:
    source = re.escape(pattern) if literal else pattern
    return re.compile(source, re.IGNORECASE)


def compile_pattern(pattern: str) -> re.Pattern[str]:
    """Compile a regex pattern case-insensitively.

    Raises:
        InvalidPatternError: If the pattern is not a valid expression.
    """
    try:
        return _compile(pattern, False)
    except re.error as e:
        raise InvalidPatternError(pattern, str(e)) from e


def validate_signal(definition: SignalDefinition) -> None:
    """Check the invariants a signal must hold before it can be activated.

    Inactive regex signals are not compiled; they are checked again when
    they are switched on.

    Raises:
        EmptyPatternError: If the pattern is empty or whitespace.
        InvalidPatternError: If an active regex signal does not compile.
    """
    if not definition.pattern or not definition.pattern.strip():
        raise EmptyPatternError(f"Signal {definition.signal_id} has an empty pattern")
    if definition.kind is SignalKind.REGEX and definition.is_active:
        compile_pattern(definition.pattern)


def find_match_span(definition: SignalDefinition, content: str) -> tuple[int, int] | None:
    """Return the span of the first match of a signal in content, if any.

    Regex compile or evaluation errors are logged and treated as no match.
    Custom signals never produce a span.
    """
    if not content:
        return None

    if definition.kind in (SignalKind.KEYWORD, SignalKind.PHRASE):
        found = _compile(definition.pattern, True).search(content)
        return found.span() if found else None

    if definition.kind is SignalKind.REGEX:
        try:
            compiled = _compile(definition.pattern, False)
            for found in compiled.finditer(content):
                if found.end() > found.start():
                    return found.span()
        except (re.error, RecursionError) as e:
            logger.warning(
                "Regex signal %s failed to evaluate, treating as no match: %s",
                definition.signal_id,
                e,
            )
        return None

    return None


def matches(
    definition: SignalDefinition,
    content: str,
    custom_matcher: CustomMatcher | None = None,
) -> tuple[bool, tuple[int, int] | None]:
    """Evaluate a signal against content.

    Args:
        definition: The signal to evaluate.
        content: Message text.
        custom_matcher: Optional predicate used for ``custom`` signals.

    Returns:
        Tuple of (matched, span). The span is None for custom matches.
    """
    if definition.kind is SignalKind.CUSTOM:
        if custom_matcher is None:
            return (False, None)
        try:
            return (bool(custom_matcher(definition, content)), None)
        except Exception as e:
            logger.warning("Custom matcher failed for signal %s: %s", definition.signal_id, e)
            return (False, None)

    span = find_match_span(definition, content)
    return (span is not None, span)


def extract_context(
    content: str,
    span: tuple[int, int] | None,
    context_chars: int = DEFAULT_CONTEXT_CHARS,
) -> str:
    """Return the text surrounding a match span.

    The window extends up to ``context_chars`` characters on either side of
    the span, clipped to the content, with surrounding whitespace trimmed.
    Without a usable span the full content is returned.
    """
    if span is None:
        return content

    start, end = span
    if start < 0 or end > len(content) or start > end:
        return content

    window_start = max(0, start - context_chars)
    window_end = min(len(content), end + context_chars)
    return content[window_start:window_end].strip()
