"""Typed errors raised by the approval workflow.

Every error carries a machine readable ``code`` and an HTTP ``status`` so
the web layer can translate it without inspecting messages.

    DocflowError
    +-- AuthorizationError        403
    +-- NotFoundError             404
    +-- AlreadyApprovedError      409
    +-- HierarchyBlockedError     409
    |   +-- StagesPendingError    409
    +-- ValidationError           400
    +-- FileStoreError            502
    +-- CascadeError              500
"""

from __future__ import annotations


class DocflowError(Exception):
    code: str = "DOCFLOW_ERROR"
    status: int = 500

    def __init__(self, message: str = ""):
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class AuthorizationError(DocflowError):
    """Actor is not allowed to perform this action."""

    code = "FORBIDDEN"
    status = 403


class NotFoundError(DocflowError):
    """Requested record does not exist."""

    code = "NOT_FOUND"
    status = 404


class AlreadyApprovedError(DocflowError):
    """Actor has already approved this item."""

    code = "ALREADY_APPROVED"
    status = 409


class HierarchyBlockedError(DocflowError):
    """Approval is blocked until earlier approvers have acted."""

    code = "HIERARCHY_BLOCKED"
    status = 409

    def __init__(self, message: str = "", waiting_for: str | None = None):
        self.waiting_for = waiting_for
        if not message and waiting_for:
            message = f"Waiting for {waiting_for}"
        super().__init__(message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["waiting_for"] = self.waiting_for
        return data


class StagesPendingError(HierarchyBlockedError):
    """Document cannot be approved while payment stages are outstanding."""

    code = "STAGES_PENDING"

    def __init__(self, pending_stages):
        self.pending_stages = list(pending_stages)
        super().__init__(
            f"Payment stages not yet approved: {', '.join(self.pending_stages)}",
            waiting_for=", ".join(self.pending_stages),
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["pending_stages"] = self.pending_stages
        return data


class ValidationError(DocflowError):
    """Input or state does not allow this action."""

    code = "VALIDATION_ERROR"
    status = 400


class FileStoreError(DocflowError):
    """The remote file store rejected the request."""

    code = "FILE_STORE_ERROR"
    status = 502


class CascadeError(DocflowError):
    """A follow-up action after full approval failed."""

    code = "CASCADE_ERROR"
    status = 500
