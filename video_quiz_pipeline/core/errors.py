"""Exception taxonomy for the quiz generation pipeline."""

from __future__ import annotations

from typing import Any, Dict, Optional, Union


class QuizPipelineError(Exception):
    """Base class for every error raised by the pipeline."""


class ProviderError(QuizPipelineError):
    """HTTP failure, rate limit or transport error from a model backend."""

    def __init__(
        self,
        message: str,
        provider: str = "",
        status: Union[int, None] = None,
        body: str = "",
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status = status
        self.body = body


class ContentBlockedError(ProviderError):
    """The provider refused to return content (safety or recitation block)."""

    def __init__(self, message: str, provider: str = "", reason: str = "") -> None:
        super().__init__(message, provider=provider, status=None, body=reason)
        self.reason = reason


class ParseError(QuizPipelineError):
    """The model returned text that is not a strict JSON object."""

    def __init__(self, message: str, raw: str = "", cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.raw = raw
        self.cause = cause


class AllProvidersFailedError(QuizPipelineError):
    """Every configured provider exhausted its retries."""

    def __init__(self, errors: Dict[str, str]) -> None:
        self.errors = dict(errors)
        providers = list(self.errors.items())
        if len(providers) >= 2:
            (primary, primary_err), (fallback, fallback_err) = providers[0], providers[1]
            message = (
                f"All providers failed. Primary ({primary}): {primary_err}. "
                f"Fallback ({fallback}): {fallback_err}"
            )
        elif providers:
            provider, err = providers[0]
            message = f"All providers failed. Primary ({provider}): {err}"
        else:
            message = "All providers failed. No providers were configured"
        super().__init__(message)


class ValidationError(QuizPipelineError):
    """Well-formed model output that breaks a question type's structural rules."""

    def __init__(self, message: str, question_type: str = "", field: str = "") -> None:
        super().__init__(message)
        self.question_type = question_type
        self.field = field


class ReconciliationFailure(ValidationError):
    """A hotspot question has no verifiable correct region."""

    def __init__(self, message: str, question_id: str = "") -> None:
        super().__init__(message, question_type="hotspot", field="bounding_boxes")
        self.question_id = question_id


class QuestionGenerationError(QuizPipelineError):
    """Per-plan failure recorded by the generation router."""

    def __init__(
        self,
        message: str,
        question_id: str,
        question_type: str = "",
        stage: str = "question_generation",
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.question_id = question_id
        self.question_type = question_type
        self.stage = stage
        self.context = context or {}


class QualityVerificationError(QuizPipelineError):
    def __init__(self, message: str, question_id: str = "") -> None:
        super().__init__(message)
        self.question_id = question_id


class PipelineError(QuizPipelineError):
    """Fatal failure that aborts a pipeline run."""

    def __init__(self, message: str, stage: str) -> None:
        super().__init__(message)
        self.stage = stage


def describe_error(exception: BaseException) -> str:
    """Extract the most specific message from RetryError and other exception wrappers."""
    # Handle RetryError from tenacity
    last_attempt = getattr(exception, "last_attempt", None)
    if last_attempt is not None:
        inner = last_attempt.exception()
        if inner is not None:
            return describe_error(inner)

    if isinstance(exception, QuizPipelineError):
        return str(exception)

    if exception.__cause__ is not None:
        return str(exception.__cause__)

    return str(exception) or exception.__class__.__name__
