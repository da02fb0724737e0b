"""Exception taxonomy for the automation engine.

Errors are grouped the way the pipeline treats them: malformed input is
acknowledged and dropped, configuration problems are logged as diagnostics,
transient external failures are retried and permanent ones are recorded as
failed outcomes straight away. None of them reach the webhook caller.
"""

from __future__ import annotations


class AutomationEngineError(RuntimeError):
    """Base class for every business error raised inside the pipeline."""


# Malformed input ------------------------------------------------------


class NormalizationError(AutomationEngineError):
    """Raised when a raw payload cannot be turned into a trigger event."""


class EmptyPayload(NormalizationError):
    """The payload is empty or not a JSON object."""


class MissingCorrelationKey(NormalizationError):
    """The payload lacks the identifier needed for its event kind."""


class UnsupportedPayload(NormalizationError):
    """The payload shape does not belong to any known event kind."""


class IgnoredPayload(NormalizationError):
    """The payload is well formed but carries nothing to act on."""


# Configuration --------------------------------------------------------


class MatchError(AutomationEngineError):
    """Raised when an event cannot be tied to exactly one automation."""


class AutomationNotFound(MatchError):
    pass


class AutomationInactive(MatchError):
    pass


class TriggerKindMismatch(MatchError):
    pass


class PlatformMismatch(MatchError):
    pass


class UnknownTemplateDefinition(MatchError):
    pass


class InvalidAutomationConfig(MatchError):
    pass


class NoMatchingAutomation(MatchError):
    """No active automation listens for the event; acknowledged and dropped."""


class ResourceResolutionError(AutomationEngineError):
    """A device, message template or connection needed by an action is unusable."""


class TemplateRenderError(AutomationEngineError):
    """A placeholder referenced by a message template has no value."""

    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(f"Unresolved template variables: {', '.join(missing)}")


class UnsupportedAction(AutomationEngineError):
    """No handler is registered for the action kind of a template definition."""


# External failures ----------------------------------------------------


class DispatchError(AutomationEngineError):
    """Raised by external clients when a side-effect call fails."""

    retryable = False

    def __init__(self, message: str, *, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class TransientDispatchError(DispatchError):
    """Timeouts, rate limits and upstream 5xx responses."""

    retryable = True


class PermanentDispatchError(DispatchError):
    """Bad credentials, deleted resources and other non-retryable failures."""


# Concurrency ----------------------------------------------------------


class AmbiguousMatch(MatchError):
    """More than one active automation claims the same event."""

    def __init__(self, message: str, candidates: list[str]):
        self.candidates = candidates
        super().__init__(message)


class DuplicateDispatch(AutomationEngineError):
    """The (automation, correlation key, event kind) triple was seen recently."""


class StoreUnavailable(TransientDispatchError):
    """The configuration database could not be reached or queried."""
