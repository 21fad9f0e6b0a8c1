class MediLinkError(Exception):
    """Base error carrying the HTTP status the API layer should answer with."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class ConfigurationError(MediLinkError):
    """The LLM provider credential is missing. Fatal, never retried."""


class UpstreamError(MediLinkError):
    """Any non-2xx or transport failure from the LLM provider."""


class RateLimitError(UpstreamError):
    status_code = 429
    is_rate_limit = True


class PaymentRequiredError(UpstreamError):
    status_code = 402
    is_payment_required = True


class SessionCreationError(MediLinkError):
    pass


class SessionNotFoundError(MediLinkError):
    status_code = 404


class ConversationBusyError(MediLinkError):
    status_code = 409


class PatientMismatchError(MediLinkError):
    """A send names a different patient than the one the session belongs to."""

    status_code = 403
