"""Exception types raised by the translation workflow."""


class DadeumiError(Exception):
    """Base error for the translation workflow."""


class CompletionError(DadeumiError):
    """A completion request failed."""


class ContextLengthExceeded(CompletionError):
    """The provider rejected the request because the prompt is too long."""


class ProviderUnavailableError(CompletionError):
    """No credentials are configured for the provider a model routes to."""


class SessionError(DadeumiError):
    """A session file exists but cannot be used to resume."""
