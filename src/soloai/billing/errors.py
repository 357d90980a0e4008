"""Billing error taxonomy.

Every error carries a machine-readable ``code``, a human ``message``, optional
``details`` and the HTTP ``status`` the API answers with.
"""


class BillingError(Exception):
    """Base class for errors surfaced to billing API callers."""

    status = 500

    def __init__(self, code: str, message: str, details: str | None = None, status: int | None = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details
        if status is not None:
            self.status = status

    def to_json(self) -> dict:
        body = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class UnauthorizedError(BillingError):
    status = 401

    def __init__(self):
        super().__init__("UNAUTHORIZED", "Unauthorized")


class EligibilityError(BillingError):
    """A business rule rejected the request."""

    status = 400


class ProviderUnavailableError(BillingError):
    """The payment provider client is not configured."""

    status = 503

    def __init__(self, provider: str):
        super().__init__(
            f"{provider.upper()}_UNAVAILABLE",
            "Payment system is currently unavailable",
        )
        self.provider = provider


class ProviderError(Exception):
    """A payment provider call failed.

    ``code`` is the provider's own error code where it gives one
    (``resource_missing`` when the object does not exist).
    """

    def __init__(self, provider: str, message: str, code: str | None = None, http_status: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.code = code
        self.http_status = http_status

    @property
    def resource_missing(self) -> bool:
        return self.code == "resource_missing"


class OperationFailedError(BillingError):
    """A mutating operation failed downstream."""

    status = 500
