class ChatError(Exception):
    """Base class for failures raised by the chat core."""

class ValidationError(ChatError):
    """
    Caller error: missing identifiers, wrong role or wrong status for the
    requested operation. Reported immediately, never retried.
    """

class NotFoundError(ChatError):
    """A referenced record does not exist."""

class ProviderError(ChatError):
    """Base class for provider-level failures."""

class ProviderClientError(ProviderError):
    """
    Non-retryable: caller/config issue (4xx invalid request, auth, unknown model,
    unsupported parameter, etc.). The fix is change input/config, not retry.
    """

class ProviderTransientError(ProviderError):
    """
    Retryable: rate limits, timeouts, network hiccups, 5xx, etc.
    Retrying with backoff is appropriate.
    """

class StreamRegistryError(ChatError):
    """Base class for stream registry conflicts."""

class StreamAlreadyExistsError(StreamRegistryError):
    """A stream is already registered under this message id."""

class StreamNotFoundError(StreamRegistryError):
    """No stream is registered under this message id."""
