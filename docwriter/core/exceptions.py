"""Core custom exceptions for the application."""


class PipelineError(Exception):
    """Base exception for pipeline-related errors."""


class ConfigurationError(PipelineError):
    """Exception for configuration-related errors (e.g., missing templates, invalid settings)."""


# ---------------------------------------------------------------------------
# Upstream (generative-text service) failures
# ---------------------------------------------------------------------------


class LLMError(Exception):
    """Raised when a call to the upstream service fails."""


class TransientUpstreamError(LLMError):
    """Rate limit, timeout, overload or unavailable model. Triggers rotation."""


class InvalidCredentialError(LLMError):
    """The credential itself was rejected by the upstream service."""


class AllModelsFailedError(TransientUpstreamError):
    """Every model in the fallback chain failed for one credential."""

    def __init__(self, message: str, last_error: Exception | None = None, attempted: list[str] | None = None):
        super().__init__(message)
        self.last_error = last_error
        self.attempted = list(attempted or [])


class AllResourcesExhaustedError(LLMError):
    """Both model fallback and credential rotation are exhausted for the current action."""

    remediation = "Add a new API key or reset a disabled one, then retry."

    def __init__(self, message: str, last_error: Exception | None = None):
        super().__init__(message)
        self.last_error = last_error


class NoCredentialsAvailableError(Exception):
    """The credential pool holds no credential with status 'active'."""


class GenerationCancelled(Exception):
    """An in-flight request was cancelled cooperatively."""


# ---------------------------------------------------------------------------
# Review / extraction
# ---------------------------------------------------------------------------


class ExtractionNotFoundError(Exception):
    """A reviewable section could not be located in the document."""

    def __init__(self, section_id: int):
        super().__init__(f"Could not find section {section_id} in the document. Please regenerate it.")
        self.section_id = section_id


# ---------------------------------------------------------------------------
# Session state machine
# ---------------------------------------------------------------------------


class SessionError(Exception):
    """Base exception for invalid use of a generation session."""


class SessionBusyError(SessionError):
    """An action was requested while a request is still streaming."""


class InvalidActionError(SessionError):
    """The requested action is not allowed in the current stage."""


class SessionNotFoundError(SessionError):
    """No session is registered under the given id."""


class CredentialError(Exception):
    """Raised when a credential cannot be added, removed or updated."""


class DocBuilderError(Exception):
    """Raised when DOCX generation fails"""
