"""Error taxonomy and error analysis for dream sequence generation."""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List


logger = logging.getLogger(__name__)


class ErrorSeverity(str, Enum):
    """Error severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """Error category types."""
    API_ERROR = "api_error"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    PROCESSING_ERROR = "processing_error"
    VALIDATION_ERROR = "validation_error"
    NETWORK_ERROR = "network_error"
    AUTHENTICATION_ERROR = "authentication_error"
    QUOTA_EXCEEDED = "quota_exceeded"
    MODEL_ERROR = "model_error"
    DATA_ERROR = "data_error"


class DreamBookError(Exception):
    """Base class for every error raised by the pipeline."""

    code = "dreambook_error"
    public_message = "The dream sequence could not be generated."


@dataclass
class ValidationDetail:
    """One user-correctable problem with a submission."""
    field: str
    message: str

    def as_dict(self) -> Dict[str, str]:
        return {"field": self.field, "message": self.message}


class SequenceValidationError(DreamBookError):
    """Pre-flight validation failure; the request never becomes a job."""

    code = "validation_error"
    public_message = "The request is not valid."

    def __init__(self, details: List[ValidationDetail] | ValidationDetail, message: str | None = None):
        if isinstance(details, ValidationDetail):
            details = [details]
        self.details: List[ValidationDetail] = list(details)
        summary = message or "; ".join(f"{d.field}: {d.message}" for d in self.details)
        super().__init__(summary or self.public_message)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "error": self.public_message,
            "detail": str(self),
            "code": self.code,
            "details": [d.as_dict() for d in self.details],
        }


class EnrichmentFailure(DreamBookError):
    """Character analysis failed; reported as progress only."""

    code = "enrichment_failure"
    public_message = "The reference photo could not be analysed; continuing without a character description."


class ProviderError(DreamBookError):
    """An image or vision provider returned an error or no usable output."""

    code = "provider_error"
    public_message = "The image provider could not produce an image."

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status_code: int | None = None,
        category: ErrorCategory | None = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.category = category or ErrorAnalyzer.categorize_error(self, message)


class SceneGenerationFailure(DreamBookError):
    """One scene failed after every fallback was exhausted."""

    code = "scene_generation_failure"
    public_message = "This scene could not be generated."

    def __init__(self, sequence_number: int, message: str | None = None):
        self.sequence_number = sequence_number
        super().__init__(message or f"Scene {sequence_number} could not be generated")


class FatalOrchestrationFailure(DreamBookError):
    """An error outside the per-scene scope that aborts the job."""

    code = "fatal_orchestration_failure"
    public_message = "The dream sequence could not be completed."


@dataclass
class ErrorContext:
    """Context information recorded for a failed call."""
    function_name: str
    attempt_number: int
    error_category: ErrorCategory
    severity: ErrorSeverity
    timestamp: float
    additional_info: Dict[str, Any] = field(default_factory=dict)


class ErrorAnalyzer:
    """Analyzes errors to determine their category and severity."""

    # Error patterns and their categories
    ERROR_PATTERNS = {
        ErrorCategory.RATE_LIMIT: [
            'rate limit', 'too many requests', 'requests per minute',
            'rate_limit_exceeded', 'throttled', '429'
        ],
        ErrorCategory.TIMEOUT: [
            'timeout', 'timed out', 'connection timeout', 'read timeout',
            'request timeout'
        ],
        ErrorCategory.NETWORK_ERROR: [
            'connection error', 'network error', 'connection refused',
            'connection reset', 'dns', 'socket', 'unreachable'
        ],
        ErrorCategory.AUTHENTICATION_ERROR: [
            'authentication', 'unauthorized', 'invalid api key', 'forbidden',
            '401', '403', 'access denied', 'invalid token'
        ],
        ErrorCategory.QUOTA_EXCEEDED: [
            'quota', 'limit exceeded', 'usage limit', 'billing',
            'insufficient funds', 'credits'
        ],
        ErrorCategory.MODEL_ERROR: [
            'model error', 'model not found', 'invalid model', 'model unavailable',
            'content policy', 'content_policy', 'safety', 'moderation', 'inappropriate content'
        ]
    }

    @classmethod
    def categorize_error(cls, error: BaseException, error_message: str | None = None) -> ErrorCategory:
        """Categorize an error based on its type and message."""
        if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
            return ErrorCategory.TIMEOUT

        error_text = (error_message or str(error)).lower()
        error_type = type(error).__name__.lower()

        for category, patterns in cls.ERROR_PATTERNS.items():
            for pattern in patterns:
                if pattern in error_text or pattern in error_type:
                    return category

        if isinstance(error, SequenceValidationError):
            return ErrorCategory.VALIDATION_ERROR
        elif isinstance(error, (ConnectionError, OSError)):
            return ErrorCategory.NETWORK_ERROR
        elif isinstance(error, ValueError):
            return ErrorCategory.DATA_ERROR
        else:
            return ErrorCategory.PROCESSING_ERROR

    @classmethod
    def assess_severity(cls, error_category: ErrorCategory, attempt_number: int = 1) -> ErrorSeverity:
        """Assess the severity of an error."""
        severity_mapping = {
            ErrorCategory.AUTHENTICATION_ERROR: ErrorSeverity.CRITICAL,
            ErrorCategory.QUOTA_EXCEEDED: ErrorSeverity.HIGH,
            ErrorCategory.MODEL_ERROR: ErrorSeverity.HIGH,
            ErrorCategory.RATE_LIMIT: ErrorSeverity.MEDIUM,
            ErrorCategory.TIMEOUT: ErrorSeverity.MEDIUM,
            ErrorCategory.NETWORK_ERROR: ErrorSeverity.MEDIUM,
            ErrorCategory.PROCESSING_ERROR: ErrorSeverity.LOW,
            ErrorCategory.VALIDATION_ERROR: ErrorSeverity.LOW,
            ErrorCategory.DATA_ERROR: ErrorSeverity.LOW,
        }

        base_severity = severity_mapping.get(error_category, ErrorSeverity.MEDIUM)

        # Escalate severity with repeated attempts
        if attempt_number > 2:
            if base_severity == ErrorSeverity.LOW:
                return ErrorSeverity.MEDIUM
            elif base_severity == ErrorSeverity.MEDIUM:
                return ErrorSeverity.HIGH

        return base_severity

    @classmethod
    def build_context(
        cls,
        error: BaseException,
        function_name: str,
        attempt_number: int = 1,
        **additional_info: Any,
    ) -> ErrorContext:
        category = getattr(error, "category", None) or cls.categorize_error(error)
        return ErrorContext(
            function_name=function_name,
            attempt_number=attempt_number,
            error_category=category,
            severity=cls.assess_severity(category, attempt_number),
            timestamp=time.time(),
            additional_info=additional_info,
        )


def user_message(error: BaseException) -> str:
    """Return a caller-safe message for any exception.

    Provider and network text never reaches the caller; only the messages of
    the pipeline's own taxonomy do.
    """
    if isinstance(error, SequenceValidationError):
        return str(error)
    if isinstance(error, DreamBookError):
        return error.public_message
    return FatalOrchestrationFailure.public_message


@asynccontextmanager
async def error_monitoring_context(name: str):
    """Context manager for monitoring errors in a code block."""
    start_time = time.time()
    errors_caught: List[Dict[str, Any]] = []

    try:
        logger.info("Starting monitored operation: %s", name)
        yield errors_caught

    except Exception as e:
        errors_caught.append({
            'error': str(e),
            'type': type(e).__name__,
            'category': ErrorAnalyzer.categorize_error(e),
            'timestamp': time.time()
        })
        logger.error("Error in monitored operation %s: %s", name, e)
        raise

    finally:
        duration = time.time() - start_time
        logger.info(
            "Monitored operation %s completed in %.2fs with %d errors",
            name,
            duration,
            len(errors_caught),
        )
