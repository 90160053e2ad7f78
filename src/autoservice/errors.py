"""Error taxonomy shared by the extraction pipeline and the chat orchestrator."""

from __future__ import annotations

from typing import Any, Dict, Optional


class AutoserviceError(Exception):
    """Base class for all errors raised by this package."""


class RateLimited(AutoserviceError):
    """Provider rejected the call because of a rate limit or exhausted quota."""

    def __init__(self, message: str, *, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ProviderUnavailable(AutoserviceError):
    """Network failure, timeout or 5xx from a remote provider."""


class ProviderRejected(AutoserviceError):
    """Provider refused the request (4xx other than 429): bad key, bad payload, ..."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SchemaValidationFailed(AutoserviceError):
    """Model output could not be validated against the target schema."""

    def __init__(self, message: str, *, partial: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.partial = partial


class CorruptImage(AutoserviceError):
    """Image bytes could not be decoded."""


class OcrUnavailable(AutoserviceError):
    """No OCR backend is configured for an operation that needs one."""


class NotFound(AutoserviceError):
    """A vehicle or invoice id could not be resolved."""

    def __init__(self, kind: str, record_id: str) -> None:
        super().__init__(f"{kind} '{record_id}' not found")
        self.kind = kind
        self.record_id = record_id
