"""Exception types raised by the dispatch engine and its collaborators."""

from typing import Optional

from llm_dispatch.models import FailureClass


class DispatchError(Exception):
    """Base class for every error the engine defines."""


class ConfigurationError(DispatchError):
    """Static tables are inconsistent; raised at startup, never at request time."""


class ProviderError(DispatchError):
    """Structured failure raised by a provider-execution collaborator.

    Carrying an explicit ``kind`` lets the controller classify the failure
    without sniffing the message text.

    Args:
        message: Human-readable error text (never shown to end users).
        kind: Which of the four failure classes this error belongs to.
        status_code: Upstream HTTP status, when there was one.
        provider_id: Provider that produced the error.
    """

    def __init__(
        self,
        message: str,
        kind: FailureClass = FailureClass.PROVIDER_FAILURE,
        status_code: Optional[int] = None,
        provider_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.provider_id = provider_id


class OrchestrationError(DispatchError):
    """Routing or classification broke inside the engine itself."""
