# errors.py
# Exception types shared by the mapping layer, the handshake and the API.

from typing import Any, Optional


class ConfigurationError(RuntimeError):
    """Raised when required gateway settings (credentials, key file) are missing."""


class DocumentValidationError(ValueError):
    """A source document cannot be mapped to the MRA schema."""

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field
        self.message = message

    def to_dict(self) -> dict:
        return {"field": self.field, "message": self.message}


# -------------------- Handshake errors --------------------

class HandshakeError(Exception):
    """
    Base class for failures of the AES/RSA handshake.

    `stage` is the handshake stage that was running when the failure happened,
    `detail` carries whatever the gateway sent back (raw body, parsed JSON).
    """

    default_message = "MRA handshake failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        stage: Optional[str] = None,
        status_code: Optional[int] = None,
        detail: Any = None,
    ):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.stage = stage
        self.status_code = status_code
        self.detail = detail


class KeyGenerationError(HandshakeError):
    default_message = "Failed to generate AES key"


class RsaWrapError(HandshakeError):
    default_message = "RSA encryption of credential payload failed"


class TokenEndpointError(HandshakeError):
    default_message = "MRA token endpoint returned error"


class TokenGenerationFailed(HandshakeError):
    default_message = "Token generation failed"


class DecryptionError(HandshakeError):
    default_message = "Failed to decrypt AES key from token response"


class PayloadEncryptionError(HandshakeError):
    default_message = "Invoice encryption failed"


class SubmissionTransportError(HandshakeError):
    default_message = "Could not reach MRA transmit endpoint"
