class SettlementError(Exception):
    status_code = 500
    code = "error"
    retryable = False

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        body = {"detail": self.message, "error": self.code, "retryable": self.retryable}
        if self.details:
            body.update(self.details)
        return body


class ValidationError(SettlementError):
    """Malformed or out-of-range input; rejected before any state change."""
    status_code = 400
    code = "validation_error"


class NotFoundError(ValidationError):
    status_code = 404
    code = "not_found"


class AuthorizationError(SettlementError):
    status_code = 403
    code = "forbidden"


class InvalidStateError(SettlementError):
    """The requested transition is not legal from the current state."""
    status_code = 409
    code = "invalid_state"


class ConflictError(SettlementError):
    """A compare-and-set lost a race. Re-read and retry if still applicable."""
    status_code = 409
    code = "conflict"
    retryable = True


TRANSIENT_UPSTREAM_STATUSES = frozenset({429, 500, 502, 503, 504})


class UpstreamError(SettlementError):
    status_code = 502
    code = "upstream_error"

    def __init__(self, message, provider_status=None, provider_body=None):
        super().__init__(message, provider_status=provider_status, provider_body=provider_body)
        self.provider_status = provider_status
        self.provider_body = provider_body

    @property
    def retryable(self):
        # no status means the request never got an answer (timeout, DNS, reset)
        return self.provider_status is None or self.provider_status in TRANSIENT_UPSTREAM_STATUSES
