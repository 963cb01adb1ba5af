"""Error taxonomy for the report pipeline.

  - ParseFailure / TruncationFailure: the JSON ladder of a stage ran out of
    options. Only the researcher and synthesizer ever let these escape.
  - EmptyResponseFailure: the collaborator returned no text at all.
  - UpstreamFailure: rate limit, auth or 5xx from a collaborator. Never
    recovered inside the pipeline.
  - InvariantViolation: a finalized report breaks a structural contract.

Every error carries the stage it came from (set by the orchestrator) plus
the raw collaborator output and stop reason when known, so a caller can
show the raw text for a failed stage.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for every error the pipeline raises."""

    def __init__(
        self,
        message: str,
        *,
        stage: str = "",
        raw_output: str = "",
        stop_reason: str | None = None,
    ):
        self.stage = stage
        self.raw_output = raw_output
        self.stop_reason = stop_reason
        super().__init__(message)


class ParseFailure(PipelineError):
    """Collaborator text could not be turned into the expected JSON shape."""


class TruncationFailure(ParseFailure):
    """Output was cut at the length ceiling and could not be repaired."""


class EmptyResponseFailure(PipelineError):
    """Collaborator returned no content."""


class UpstreamFailure(PipelineError):
    """Failure reported by a remote collaborator (auth, rate limit, 5xx...)."""

    category: str = "upstream"


class InvariantViolation(PipelineError):
    """A finalized report broke a structural invariant. Indicates a bug."""


# User-facing buckets a caller may map errors into.
USER_FACING_CATEGORIES = ("auth", "rate_limit", "upstream", "generic")


def user_facing_category(exc: BaseException) -> str:
    """Map an exception raised by the pipeline to a user-facing category.

    The core never writes user copy; callers pick wording per category.
    """
    if isinstance(exc, UpstreamFailure):
        category = getattr(exc, "category", "upstream")
        if category in USER_FACING_CATEGORIES:
            return category
        return "upstream"
    return "generic"
