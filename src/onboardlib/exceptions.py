"""Error taxonomy for the onboarding pipeline.

Transient collaborator failures are normally absorbed where they happen
(error events, skipped sync results). The classes here cover the cases a
caller has to see: precondition violations and fatal configuration errors.
"""

from __future__ import annotations


class OnboardingError(Exception):
    """Base class for every error raised by onboardlib."""


class PreconditionError(OnboardingError):
    """A request was rejected because its preconditions did not hold."""


class InvalidStateTransition(PreconditionError):
    """A lifecycle action is not allowed from the current processing state."""

    def __init__(self, action: str, state: str) -> None:
        self.action = action
        self.state = state
        super().__init__(f"Cannot {action} while pipeline is {state}")


class CorrectionParseError(PreconditionError):
    """A correction string does not follow the correction grammar (strict mode only)."""

    def __init__(self, text: str, reason: str) -> None:
        self.text = text
        self.reason = reason
        super().__init__(f"Cannot parse correction {text!r}: {reason}")


class UnknownTypeError(PreconditionError):
    """An entity or relationship type is outside the fixed vocabulary."""

    def __init__(self, kind: str, value: str) -> None:
        self.kind = kind
        self.value = value
        super().__init__(f"Unknown {kind} type: {value!r}")


class ConfigurationError(OnboardingError):
    """Invalid configuration, or a collaborator that cannot be reached at all."""


class ExternalServiceError(OnboardingError):
    """A call into an external collaborator failed."""

    def __init__(self, service: str, message: str) -> None:
        self.service = service
        super().__init__(f"{service}: {message}")
