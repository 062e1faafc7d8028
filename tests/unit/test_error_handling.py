"""Unit tests for the error taxonomy and error analysis."""

import asyncio

import pytest

from dreambook.error_handling import (
    EnrichmentFailure,
    ErrorAnalyzer,
    ErrorCategory,
    ErrorSeverity,
    FatalOrchestrationFailure,
    ProviderError,
    SceneGenerationFailure,
    SequenceValidationError,
    ValidationDetail,
    error_monitoring_context,
    user_message,
)


class TestErrorAnalyzer:
    """Test ErrorAnalyzer categorisation and severity."""

    @pytest.mark.parametrize(
        "message,category",
        [
            ("Rate limit exceeded", ErrorCategory.RATE_LIMIT),
            ("HTTP 429", ErrorCategory.RATE_LIMIT),
            ("Invalid API key provided", ErrorCategory.AUTHENTICATION_ERROR),
            ("Your request was rejected by the safety system", ErrorCategory.MODEL_ERROR),
            ("Billing hard limit reached", ErrorCategory.QUOTA_EXCEEDED),
            ("Connection refused", ErrorCategory.NETWORK_ERROR),
            ("something odd", ErrorCategory.PROCESSING_ERROR),
        ],
    )
    def test_categorize_by_message(self, message, category):
        assert ErrorAnalyzer.categorize_error(Exception(message)) == category

    def test_timeout_type(self):
        assert ErrorAnalyzer.categorize_error(asyncio.TimeoutError()) == ErrorCategory.TIMEOUT

    def test_value_error_is_data_error(self):
        assert ErrorAnalyzer.categorize_error(ValueError("bad input")) == ErrorCategory.DATA_ERROR

    def test_severity_escalates_with_attempts(self):
        assert ErrorAnalyzer.assess_severity(ErrorCategory.TIMEOUT) == ErrorSeverity.MEDIUM
        assert ErrorAnalyzer.assess_severity(ErrorCategory.TIMEOUT, attempt_number=3) == ErrorSeverity.HIGH
        assert ErrorAnalyzer.assess_severity(ErrorCategory.AUTHENTICATION_ERROR) == ErrorSeverity.CRITICAL

    def test_build_context_uses_error_category(self):
        error = ProviderError("nope", provider="dalle", category=ErrorCategory.QUOTA_EXCEEDED)

        context = ErrorAnalyzer.build_context(error, "generate", attempt_number=1, provider="dalle")

        assert context.error_category == ErrorCategory.QUOTA_EXCEEDED
        assert context.severity == ErrorSeverity.HIGH
        assert context.additional_info == {"provider": "dalle"}


class TestTaxonomy:
    """Test the pipeline's own exceptions."""

    def test_validation_error_collects_details(self):
        error = SequenceValidationError(
            [ValidationDetail("style_key", "A style must be selected."),
             ValidationDetail("reference_image", "A reference photo is required.")]
        )

        body = error.as_dict()
        assert body["code"] == "validation_error"
        assert body["details"][0] == {"field": "style_key", "message": "A style must be selected."}
        assert "reference_image" in body["detail"]

    def test_validation_error_accepts_single_detail(self):
        error = SequenceValidationError(ValidationDetail("subject_label", "Required"))
        assert len(error.details) == 1

    def test_provider_error_categorised_from_message(self):
        error = ProviderError("Rate limit exceeded", provider="dalle", status_code=429)
        assert error.category == ErrorCategory.RATE_LIMIT
        assert error.status_code == 429

    def test_scene_failure_keeps_number(self):
        error = SceneGenerationFailure(3)
        assert error.sequence_number == 3
        assert "Scene 3" in str(error)


class TestUserMessage:
    """Caller-facing messages never leak provider text."""

    def test_validation_message_is_specific(self):
        error = SequenceValidationError(ValidationDetail("style_key", "The selected style is not valid."))
        assert user_message(error) == "style_key: The selected style is not valid."

    def test_taxonomy_messages_are_public(self):
        assert user_message(SceneGenerationFailure(1, "OpenAI said 500")) == SceneGenerationFailure.public_message
        assert user_message(EnrichmentFailure("vision down")) == EnrichmentFailure.public_message

    def test_foreign_errors_become_fatal_message(self):
        assert user_message(KeyError("secret")) == FatalOrchestrationFailure.public_message


class TestErrorMonitoringContext:
    @pytest.mark.asyncio
    async def test_reraises_errors(self):
        with pytest.raises(RuntimeError):
            async with error_monitoring_context("failing_operation"):
                raise RuntimeError("boom")

    @pytest.mark.asyncio
    async def test_yields_error_list(self):
        async with error_monitoring_context("quiet_operation") as errors:
            assert errors == []
