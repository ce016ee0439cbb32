"""kmwebhooks exception hierarchy.

Provides structured exceptions for error handling throughout the codebase.
All exceptions inherit from KMWebhookError for easy catching.

Delivery failures are not exceptions: the dispatcher and retry loop report
them as classified results. These exceptions cover configuration, secret
handling, registration input and storage.
"""

from __future__ import annotations


class KMWebhookError(Exception):
    """Base exception for all kmwebhooks errors.

    Attributes:
        message: Human-readable error description.
        code: Machine-readable error code for API responses.
    """

    code: str = "webhook_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }


class ConfigurationError(KMWebhookError):
    """Configuration error.

    Raised when the webhook signing key is missing or malformed. Secret
    operations refuse to run rather than fall back to plaintext.
    """

    code: str = "configuration_error"


class SecretError(KMWebhookError):
    """Encrypted secret could not be decrypted."""

    code: str = "secret_error"


class SecretFormatError(SecretError):
    """Serialized secret is not `nonce.ciphertext.tag` with valid lengths."""

    code: str = "secret_format_error"


class SecretAuthenticationError(SecretError):
    """Authentication tag did not verify.

    Raised on tampering, corruption or a wrong key. Plaintext is never
    returned in this case.
    """

    code: str = "secret_authentication_error"


class ValidationError(KMWebhookError):
    """Invalid input provided.

    Raised when a subscription URL or event list fails validation.

    Attributes:
        field: The field that failed validation.
        message: Description of the validation failure.
    """

    code: str = "validation_error"

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "field": self.field,
                "message": self.message,
            }
        }


class StorageError(KMWebhookError):
    """Storage operation failed.

    Raised when the subscription registry or delivery log cannot be reached.
    """

    code: str = "storage_error"
