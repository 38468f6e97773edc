from __future__ import annotations

from typing import Any


class KbEmbedError(Exception):
    """Base error for kbembed."""


class ConfigurationError(KbEmbedError):
    """Missing or invalid runtime configuration."""


class ProviderConfigError(ConfigurationError):
    """Missing or invalid provider configuration."""


class KeyringConfigurationError(ConfigurationError):
    """Encryption key material is missing or malformed."""


class UnknownKeyVersionError(KbEmbedError):
    """Ciphertext references a key version the keyring does not hold."""


class InvalidByteaError(ValueError, KbEmbedError):
    """Hex literal is not a valid bytea encoding."""


class ProviderRequestError(KbEmbedError):
    """Upstream provider call failed at the transport or HTTP level."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderFormatError(KbEmbedError):
    """Upstream provider returned a payload of an unexpected shape."""


class OAuthProviderError(KbEmbedError):
    """OAuth exchange failed; carries a stable browser-safe code."""

    def __init__(self, code: str, message: str | None = None) -> None:
        super().__init__(message or code)
        self.code = code


class IngestionError(KbEmbedError):
    """Ingestion job could not be completed."""


class StoreError(KbEmbedError):
    """Backing store operation failed."""


class RateLimitBackendError(KbEmbedError):
    """Rate limit backend could not be reached."""


class ServiceError(KbEmbedError):
    """Policy or validation failure rendered as an API error envelope."""

    def __init__(
        self,
        *,
        status_code: int,
        code: str,
        message: str,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.retryable = retryable
        self.details = details or {}
        self.headers = headers or {}


def invalid_request(message: str, details: dict[str, Any] | None = None) -> ServiceError:
    return ServiceError(status_code=400, code="invalid_request", message=message, details=details)


def missing_configuration(message: str) -> ServiceError:
    return ServiceError(status_code=500, code="missing_configuration", message=message)


def invalid_origin_format() -> ServiceError:
    return ServiceError(
        status_code=400,
        code="invalid_origin_format",
        message="Origin header must be a valid https origin (or http on localhost).",
    )


def project_not_found() -> ServiceError:
    return ServiceError(status_code=404, code="project_not_found", message="Project not found.")


def blocked_origin(project_handle: str) -> ServiceError:
    return ServiceError(
        status_code=403,
        code="blocked_origin",
        message="This chat is not enabled for this website.",
        details={"project_handle": project_handle},
    )


def internal_error(message: str = "Internal server error.", *, retryable: bool = False) -> ServiceError:
    return ServiceError(status_code=500, code="internal_error", message=message, retryable=retryable)
