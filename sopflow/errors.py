"""Exception taxonomy for sopflow."""

from __future__ import annotations


class SopflowError(Exception):
    """Base class for all sopflow errors."""


class StepConfigurationError(SopflowError):
    """A step's configuration cannot be executed.

    Content and logic errors are fatal to the instance and are never retried.
    """


class DefinitionNotFound(SopflowError):
    """Raised when a process definition slug cannot be resolved."""


class InstanceNotFound(SopflowError):
    """Raised when a process instance id cannot be resolved."""


class WorkingDataViolation(SopflowError):
    """Raised when a write would remove a previously written working-data key."""

    def __init__(self, missing_keys: set[str]) -> None:
        self.missing_keys = missing_keys
        super().__init__(
            f"Working data is append-only; write would drop keys: {sorted(missing_keys)}"
        )


class DecisionProviderError(SopflowError):
    """Base class for decision provider failures."""


class ProviderTransportError(DecisionProviderError):
    """Network, rate-limit or server-side failure talking to a provider."""


class ProviderContentError(DecisionProviderError):
    """The provider answered but the content could not be used."""


class DecisionExhaustedError(SopflowError):
    """The provider failed at the highest tier allowed for a decision."""

    def __init__(self, tier: int, escalation_chain: list[int], cause: Exception) -> None:
        self.tier = tier
        self.escalation_chain = escalation_chain
        self.cause = cause
        super().__init__(f"Decision provider error at tier {tier}: {cause}")


class ExternalServiceError(SopflowError):
    """An external collaborator (data, messaging, memory) call failed."""


class NotificationError(ExternalServiceError):
    """A notification could not be delivered."""
