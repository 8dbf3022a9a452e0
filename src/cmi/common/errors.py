from __future__ import annotations

from typing import Any, Optional


class IngestError(Exception):
    error = "Internal processing error"
    code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, message: str, *, code: Optional[str] = None, detail: Any = None, http_status: Optional[int] = None):
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.detail = detail
        super().__init__(message)


class UnauthorizedError(IngestError):
    error = "Unauthorized"
    code = "UNAUTHORIZED"
    http_status = 401


class NotFoundError(IngestError):
    error = "Not found"
    code = "NOT_FOUND"
    http_status = 404


class MethodNotAllowedError(IngestError):
    error = "Method not allowed"
    code = "METHOD_NOT_ALLOWED"
    http_status = 405


class UnrecognizedFormatError(IngestError):
    error = "Unrecognized payload format"
    code = "UNRECOGNIZED_FORMAT"
    http_status = 400


class PayloadDecodeError(IngestError):
    """The body could not be decoded (bad JSON, bad encoding)."""

    code = "DECODE_ERROR"
    http_status = 500


class ContractViolationError(IngestError):
    code = "CONTRACT_VIOLATION"
    http_status = 500
