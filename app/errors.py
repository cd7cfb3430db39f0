"""Integration layer exceptions.

Services raise these; ``app.main`` turns them into JSON error responses.
"""

from typing import Any, Optional


class IntegrationError(Exception):
    """Base class for failures inside the integration layer."""

    status_code = 500
    code = "INTEGRATION_ERROR"

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"detail": self.message, "code": self.code}
        if self.details is not None:
            body["details"] = self.details
        return body


class ConfigurationError(IntegrationError):
    code = "CONFIGURATION_ERROR"


class CredentialError(IntegrationError):
    code = "CREDENTIAL_ERROR"


class IntegrationAPIError(IntegrationError):
    """Vendor API answered with an error (or could not be reached: status 0)."""

    status_code = 502
    code = "VENDOR_API_ERROR"

    def __init__(self, message: str, status: int = 0, details: Optional[Any] = None):
        super().__init__(message, details)
        self.status = status

    @property
    def retryable(self) -> bool:
        return self.status == 0 or self.status == 429 or self.status >= 500


class UnsupportedPlatformError(IntegrationError):
    status_code = 400
    code = "UNSUPPORTED_PLATFORM"

    def __init__(self, platform: Optional[str]):
        super().__init__(f"Unsupported platform: {platform}")
        self.platform = platform


class WebhookVerificationError(IntegrationError):
    status_code = 401
    code = "WEBHOOK_VERIFICATION_FAILED"


class PayloadError(IntegrationError):
    status_code = 400
    code = "INVALID_PAYLOAD"
