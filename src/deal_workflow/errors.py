"""
Exception hierarchy for the Deal Workflow engine.

Every refused transition raises a DealWorkflowError subclass carrying a
`context` dict (deal, version, claim ids and the like) so the caller can
render a specific message. Batch operations collect per-item failures in
a PartialSuccessResult instead of aborting.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Iterable

import openai


class DealWorkflowError(Exception):
    """Base exception for all deal workflow errors."""

    retryable: bool = False

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ', '.join(f'{k}={v}' for k, v in self.context.items())
        return f'{self.message} ({details})'


# Request errors: raised before any state is touched


class ValidationError(DealWorkflowError):
    """Input is malformed."""


class NotFound(DealWorkflowError):
    """A referenced deal, claim, version or recipient does not exist."""


class NotAuthorized(DealWorkflowError):
    """The actor's role or broker capabilities do not allow the transition."""


class TypeMismatch(DealWorkflowError):
    """Values have the wrong type for the requested operation (e.g. averaging text)."""


# State errors


class InvalidState(DealWorkflowError):
    """
    The entity's current status does not admit the operation.

    `current_status` and `allowed_statuses` are also copied into the context
    so a UI can say "only allowed from BROKER_APPROVED".
    """

    def __init__(
        self,
        message: str,
        current_status: str | None = None,
        allowed_statuses: Iterable[str] | None = None,
        context: dict[str, Any] | None = None,
    ):
        self.current_status = current_status
        self.allowed_statuses = list(allowed_statuses or ())
        merged = {
            **(context or {}),
            **({'current_status': current_status} if current_status is not None else {}),
            **({'allowed_statuses': self.allowed_statuses} if self.allowed_statuses else {}),
        }
        super().__init__(message, context=merged)


class AlreadyResolved(InvalidState):
    """The conflict is no longer OPEN."""


class AlreadyResponded(InvalidState):
    """The distribution recipient already submitted a response."""


class RegenerateNotAllowed(InvalidState):
    """The latest OM version is past DRAFT and regenerate was not requested."""


class StaleState(DealWorkflowError):
    """The record changed between read and write; re-read and retry."""

    retryable = True


class DuplicateRecord(StaleState):
    """A concurrent writer already inserted a record with the same unique key."""


# Collaborator errors


class GenerationFailed(DealWorkflowError):
    """The content generator failed or timed out. Nothing was persisted."""

    retryable = True


class NotificationError(DealWorkflowError):
    """A notification sink could not deliver. Never fails the transition itself."""


_TIMEOUT_TYPES = (TimeoutError, asyncio.TimeoutError, openai.APITimeoutError)


def wrap_generation_error(
    exc: BaseException, context: dict[str, Any] | None = None
) -> GenerationFailed:
    """
    Map a content generator exception onto GenerationFailed.

    Args:
        exc: The collaborator exception (OpenAI error, timeout, anything else)
        context: Extra context such as the deal id

    Returns:
        GenerationFailed whose context records the original error
    """
    ctx = {**(context or {}), 'original_error': str(exc), 'error_type': type(exc).__name__}

    if isinstance(exc, _TIMEOUT_TYPES):
        return GenerationFailed('Content generation timed out', context=ctx)
    if isinstance(exc, openai.RateLimitError):
        return GenerationFailed('Content generation rate limited by the provider', context=ctx)
    return GenerationFailed(f'Content generation failed: {exc}', context=ctx)


# Batch outcomes


@dataclass
class ItemResult:
    item_id: str | None
    error: DealWorkflowError | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class PartialSuccessResult:
    """Per-item outcomes of a batch operation, in processing order."""

    outcomes: list[ItemResult] = field(default_factory=list)

    @property
    def succeeded(self) -> list[ItemResult]:
        return [o for o in self.outcomes if o.success]

    @property
    def failed(self) -> list[ItemResult]:
        return [o for o in self.outcomes if not o.success]

    @property
    def all_succeeded(self) -> bool:
        return all(o.success for o in self.outcomes)

    def add_success(self, item_id: str | None = None, data: dict[str, Any] | None = None) -> None:
        self.outcomes.append(ItemResult(item_id, data=data or {}))

    def add_failure(
        self,
        error: DealWorkflowError,
        item_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        self.outcomes.append(ItemResult(item_id, error=error, data=data or {}))

    def to_dict(self) -> dict[str, Any]:
        """Counts and ids, suitable for a log event."""
        failed = self.failed
        return {
            'success_count': len(self.outcomes) - len(failed),
            'failure_count': len(failed),
            'succeeded_ids': [o.item_id for o in self.succeeded if o.item_id],
            'failures': {o.item_id: str(o.error) for o in failed},
        }
