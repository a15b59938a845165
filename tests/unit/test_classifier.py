"""Unit tests for resilient_ui.reporting.classifier - error taxonomy."""

from __future__ import annotations

import re

import pytest

from resilient_ui.reporting.classifier import ErrorClassifier, ErrorPattern
from resilient_ui.reporting.models import (
    ErrorCategory,
    ErrorInfo,
    RecoveryStrategy,
    Severity,
    generate_error_id,
)


@pytest.fixture()
def classifier() -> ErrorClassifier:
    return ErrorClassifier()


class TestClassify:
    """First matching category wins; unmatched errors get the default."""

    @pytest.mark.parametrize(
        ("message", "category"),
        [
            ("Request timeout after 30s", ErrorCategory.NETWORK),
            ("Failed to fetch", ErrorCategory.NETWORK),
            ("Connection reset by peer", ErrorCategory.NETWORK),
            ("403 Forbidden", ErrorCategory.SECURITY),
            ("Invalid nonce supplied", ErrorCategory.SECURITY),
            ("CSRF token mismatch", ErrorCategory.SECURITY),
            ("State document corrupt: invalid JSON", ErrorCategory.STATE),
            ("Unsupported state version 3", ErrorCategory.STATE),
            ("Component menu initialization failed", ErrorCategory.COMPONENT),
            ("x is undefined", ErrorCategory.COMPONENT),
            ("Maximum call stack size exceeded", ErrorCategory.CRITICAL),
            ("Out of memory", ErrorCategory.CRITICAL),
            ("Something odd happened", ErrorCategory.UNKNOWN),
        ],
    )
    def test_categories(
        self, classifier: ErrorClassifier, message: str, category: ErrorCategory
    ) -> None:
        assert classifier.classify(message).category is category

    def test_network_outranks_security(self, classifier: ErrorClassifier) -> None:
        result = classifier.classify("Unauthorized: connection dropped")
        assert result.category is ErrorCategory.NETWORK

    def test_stack_is_matched_too(self, classifier: ErrorClassifier) -> None:
        result = classifier.classify("Error", stack="at fetchSettings (app.js:10)")
        assert result.category is ErrorCategory.NETWORK

    def test_matching_is_case_insensitive(self, classifier: ErrorClassifier) -> None:
        assert classifier.classify("TIMEOUT").category is ErrorCategory.NETWORK

    def test_security_properties(self, classifier: ErrorClassifier) -> None:
        result = classifier.classify("forbidden")
        assert result.severity is Severity.HIGH
        assert result.recoverable
        assert result.strategy is RecoveryStrategy.SECURITY

    def test_critical_is_not_recoverable(self, classifier: ErrorClassifier) -> None:
        result = classifier.classify("stack overflow")
        assert result.severity is Severity.CRITICAL
        assert not result.recoverable
        assert result.strategy is RecoveryStrategy.CRITICAL

    def test_default_classification(self, classifier: ErrorClassifier) -> None:
        result = classifier.classify("")
        assert result.category is ErrorCategory.UNKNOWN
        assert result.severity is Severity.MEDIUM
        assert result.recoverable
        assert result.strategy is RecoveryStrategy.COMPONENT

    def test_classify_exception_uses_type_name(
        self, classifier: ErrorClassifier
    ) -> None:
        result = classifier.classify_exception(TimeoutError())
        assert result.category is ErrorCategory.NETWORK

    def test_custom_patterns(self) -> None:
        custom = ErrorPattern(
            category=ErrorCategory.STATE,
            patterns=(re.compile("quota", re.IGNORECASE),),
            severity=Severity.LOW,
            recoverable=True,
            strategy=RecoveryStrategy.STATE,
        )
        classifier = ErrorClassifier([custom])

        assert classifier.classify("Quota exceeded").severity is Severity.LOW
        assert classifier.classify("timeout").category is ErrorCategory.UNKNOWN


class TestComponentName:
    """Component extraction from messages."""

    def test_explicit_component_wins(self) -> None:
        name = ErrorClassifier.extract_component_name("component: tabs", "menu")
        assert name == "menu"

    @pytest.mark.parametrize(
        ("message", "expected"),
        [
            ("Component: Tabs failed", "tabs"),
            ("component menu initialization failed", "menu"),
            ("Nothing to see", None),
        ],
    )
    def test_extracted_from_message(self, message: str, expected: str | None) -> None:
        assert ErrorClassifier.extract_component_name(message) == expected


class TestErrorModels:
    """ErrorInfo construction and identifiers."""

    def test_from_exception_carries_stack(self) -> None:
        try:
            raise ValueError("bad input")
        except ValueError as exc:
            info = ErrorInfo.from_exception(exc, component="forms")

        assert info.message == "bad input"
        assert info.component == "forms"
        assert info.stack is not None
        assert "ValueError" in info.stack

    def test_from_exception_without_message(self) -> None:
        info = ErrorInfo.from_exception(KeyError())
        assert info.message == "KeyError"
        assert info.stack is None

    def test_error_id_format(self) -> None:
        error_id = generate_error_id(1_700_000_000.0)
        assert re.fullmatch(r"err_1700000000000_[0-9a-f]{9}", error_id)
        assert generate_error_id(1.0) != generate_error_id(1.0)
