"""Pattern-based error taxonomy.

Categories are checked in order against ``"<message> <stack>"``; the first
category with a matching pattern wins. Unmatched errors fall back to a
medium-severity, recoverable classification using component recovery.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass

from resilient_ui.reporting.models import (
    Classification,
    ErrorCategory,
    RecoveryStrategy,
    Severity,
)

_COMPONENT_NAME_RE = re.compile(r"component[:\s]+(\w+)", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class ErrorPattern:
    """One category rule: any regex match assigns the classification."""

    category: ErrorCategory
    patterns: tuple[re.Pattern[str], ...]
    severity: Severity
    recoverable: bool
    strategy: RecoveryStrategy

    def matches(self, text: str) -> bool:
        return any(pattern.search(text) for pattern in self.patterns)

    def classification(self) -> Classification:
        return Classification(
            category=self.category,
            severity=self.severity,
            recoverable=self.recoverable,
            strategy=self.strategy,
        )


def _compile(*words: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(word, re.IGNORECASE) for word in words)


DEFAULT_PATTERNS: tuple[ErrorPattern, ...] = (
    ErrorPattern(
        category=ErrorCategory.NETWORK,
        patterns=_compile(
            "network", "fetch", "timeout", "timed out", "connection", "offline"
        ),
        severity=Severity.MEDIUM,
        recoverable=True,
        strategy=RecoveryStrategy.NETWORK,
    ),
    ErrorPattern(
        category=ErrorCategory.SECURITY,
        patterns=_compile(
            "nonce", "csrf", "unauthorized", "forbidden", "security", "authorization"
        ),
        severity=Severity.HIGH,
        recoverable=True,
        strategy=RecoveryStrategy.SECURITY,
    ),
    ErrorPattern(
        category=ErrorCategory.STATE,
        patterns=_compile("corrupt", "circular reference", "state version"),
        severity=Severity.MEDIUM,
        recoverable=True,
        strategy=RecoveryStrategy.STATE,
    ),
    ErrorPattern(
        category=ErrorCategory.COMPONENT,
        patterns=_compile("component", "initialization", "not found", "undefined"),
        severity=Severity.MEDIUM,
        recoverable=True,
        strategy=RecoveryStrategy.COMPONENT,
    ),
    ErrorPattern(
        category=ErrorCategory.CRITICAL,
        patterns=_compile(
            "out of memory",
            "stack overflow",
            "maximum call stack",
            "recursion depth",
            "script error",
        ),
        severity=Severity.CRITICAL,
        recoverable=False,
        strategy=RecoveryStrategy.CRITICAL,
    ),
)

DEFAULT_CLASSIFICATION = Classification(
    category=ErrorCategory.UNKNOWN,
    severity=Severity.MEDIUM,
    recoverable=True,
    strategy=RecoveryStrategy.COMPONENT,
)


class ErrorClassifier:
    """Assigns category, severity, recoverability and strategy to failures."""

    def __init__(self, patterns: Sequence[ErrorPattern] | None = None) -> None:
        self._patterns = tuple(patterns) if patterns is not None else DEFAULT_PATTERNS

    @property
    def patterns(self) -> tuple[ErrorPattern, ...]:
        return self._patterns

    def classify(self, message: str, stack: str | None = None) -> Classification:
        """Classify a failure by its message and optional stack trace.

        Args:
            message: The failure message.
            stack: Formatted stack trace, if available.

        Returns:
            The first matching category's classification, or the default.
        """
        text = f"{message or ''} {stack or ''}"
        for rule in self._patterns:
            if rule.matches(text):
                return rule.classification()
        return DEFAULT_CLASSIFICATION.model_copy()

    def classify_exception(self, exc: BaseException) -> Classification:
        return self.classify(f"{exc.__class__.__name__}: {exc}")

    @staticmethod
    def extract_component_name(
        message: str, component: str | None = None
    ) -> str | None:
        """Name of the component a failure refers to.

        An explicit ``component`` wins; otherwise ``component: <name>`` is
        looked up in the message.
        """
        if component:
            return component
        match = _COMPONENT_NAME_RE.search(message or "")
        if match:
            return match.group(1).lower()
        return None
