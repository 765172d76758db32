"""Retryable-failure classification.

A failure is retryable when any configured pattern matches its message,
its short code, or its name. String patterns use substring containment,
compiled regular expressions use ``search``. Configuration strings written
as ``/.../`` are compiled to regular expressions.

Accepted failure shapes:
- exceptions (Playwright ``Error``, ``OSError``, anything with ``message``,
  ``code`` or ``name`` attributes);
- plain failure strings (e.g. Playwright's ``request.failure`` text);
- mappings with ``message``/``error_text``, ``code`` and ``name`` keys;
- request-like objects exposing a ``failure`` attribute or method.
"""

from __future__ import annotations

import errno
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Union

RetryPattern = Union[str, "re.Pattern[str]"]


def parse_patterns(values: Iterable[Any]) -> list[RetryPattern]:
    """Normalize configured patterns.

    Blank strings are dropped. ``"/expr/"`` becomes ``re.compile("expr")``.
    Raises ``TypeError`` for anything that is neither a string nor a
    compiled pattern.
    """
    patterns: list[RetryPattern] = []
    for value in values:
        if isinstance(value, re.Pattern):
            patterns.append(value)
            continue
        if not isinstance(value, str):
            raise TypeError(f"Retry pattern must be str or re.Pattern, got {type(value).__name__}")
        text = value.strip()
        if not text:
            continue
        if len(text) > 2 and text.startswith("/") and text.endswith("/"):
            patterns.append(re.compile(text[1:-1]))
        else:
            patterns.append(text)
    return patterns


def _text(value: Any) -> str:
    return "" if value is None else str(value)


@dataclass(frozen=True)
class FailureInfo:
    """The three fields a failure is matched on."""

    message: str = ""
    code: str = ""
    name: str = ""

    def fields(self) -> tuple[str, ...]:
        return tuple(f for f in (self.message, self.code, self.name) if f)

    @classmethod
    def from_failure(cls, failure: Any) -> "FailureInfo | None":
        if failure is None:
            return None
        if isinstance(failure, FailureInfo):
            return failure
        if isinstance(failure, str):
            return cls(message=failure)
        if isinstance(failure, Mapping):
            return cls(
                message=_text(failure.get("message") or failure.get("error_text")),
                code=_text(failure.get("code")),
                name=_text(failure.get("name")),
            )
        if isinstance(failure, BaseException):
            code = getattr(failure, "code", None)
            if code is None and isinstance(failure, OSError) and failure.errno is not None:
                code = errno.errorcode.get(failure.errno)
            return cls(
                message=_text(getattr(failure, "message", None) or str(failure)),
                code=_text(code),
                name=_text(getattr(failure, "name", None) or type(failure).__name__),
            )

        # Request-like: Playwright exposes ``failure`` as a property holding
        # the error text; older shapes expose a method.
        error_text = getattr(failure, "error_text", None)
        if error_text is None and hasattr(failure, "failure"):
            error_text = failure.failure
            if callable(error_text):
                error_text = error_text()
            if isinstance(error_text, Mapping):
                error_text = error_text.get("error_text") or error_text.get("errorText")
        return cls(message=_text(error_text))


class RetryClassifier:
    """Compiled, reusable ``failure -> bool`` predicate."""

    __slots__ = ("_patterns",)

    def __init__(self, patterns: Iterable[Any]) -> None:
        self._patterns: tuple[RetryPattern, ...] = tuple(parse_patterns(patterns))

    @property
    def patterns(self) -> tuple[RetryPattern, ...]:
        return self._patterns

    def __call__(self, failure: Any) -> bool:
        info = FailureInfo.from_failure(failure)
        if info is None:
            return False
        fields = info.fields()
        if not fields:
            return False
        for pattern in self._patterns:
            for field in fields:
                if isinstance(pattern, str):
                    if pattern in field:
                        return True
                elif pattern.search(field):
                    return True
        return False

    def __repr__(self) -> str:
        return f"RetryClassifier({list(self._patterns)!r})"


def compile_retryable(patterns: Iterable[Any]) -> RetryClassifier:
    """Build a classifier from configured patterns."""
    return RetryClassifier(patterns)
