"""
Wealth CRM Error Taxonomy

Every error here is recoverable at the request boundary. Routers turn them
into an HTTPException using ``status_code`` and ``message``.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class CRMError(Exception):
    """Base class for domain errors surfaced to API callers"""

    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_detail(self) -> Dict[str, Any]:
        return {"error": type(self).__name__, "message": self.message}


class NotFoundError(CRMError):
    """Referenced template, deal or booking does not exist or is inactive"""

    status_code = status.HTTP_404_NOT_FOUND


class InvalidStateError(CRMError):
    """A workflow precondition is not met"""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, current: Optional[Dict[str, Any]] = None,
                 required: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.current = current or {}
        self.required = required or {}

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail["current_state"] = self.current
        detail["required_state"] = self.required
        return detail


class ConflictError(CRMError):
    """Requested booking slot was taken at write time"""

    status_code = status.HTTP_409_CONFLICT


class ConcurrentModificationError(CRMError):
    """Deal state changed between read and conditional write"""

    status_code = status.HTTP_409_CONFLICT


class DeliveryError(CRMError):
    """Email collaborator failed to send"""

    status_code = status.HTTP_502_BAD_GATEWAY


class ArchiveError(CRMError):
    """Archive collaborator failed to store documents"""

    status_code = status.HTTP_502_BAD_GATEWAY


def to_http_exception(error: CRMError) -> HTTPException:
    """HTTPException carrying the error's status and structured detail"""
    return HTTPException(status_code=error.status_code, detail=error.to_detail())
