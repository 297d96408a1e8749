from __future__ import annotations


class CoreError(Exception):
    code = "CORE_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_detail(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class ValidationError(CoreError):
    code = "VALIDATION_ERROR"


class NotFoundError(CoreError):
    code = "NOT_FOUND"


class PermissionDeniedError(CoreError):
    code = "PERMISSION_DENIED"


class ConflictError(CoreError):
    code = "CONFLICT"


class ConcurrencyConflict(ConflictError):
    code = "CONCURRENCY_CONFLICT"
    retryable = True


class InternalError(CoreError):
    code = "INTERNAL_ERROR"


class UserNotFound(NotFoundError):
    code = "USER_NOT_FOUND"


class ParentNotFound(NotFoundError):
    code = "HIERARCHY_PARENT_NOT_FOUND"


class InvalidParentRole(ConflictError):
    code = "HIERARCHY_INVALID_PARENT_ROLE"


class CircularReference(ConflictError):
    code = "HIERARCHY_CIRCULAR_REFERENCE"


class MaxDepthExceeded(ConflictError):
    code = "HIERARCHY_MAX_DEPTH_EXCEEDED"


class NoChangeNeeded(ConflictError):
    code = "HIERARCHY_NO_CHANGE_NEEDED"


class AlreadyInitialized(ConflictError):
    code = "HIERARCHY_ALREADY_INITIALIZED"


class CodeNotFound(NotFoundError):
    code = "REFERENCE_CODE_NOT_FOUND"


class InvalidRecruitmentCode(ValidationError):
    code = "REFERENCE_CODE_INVALID"


class DuplicateActiveCode(ConflictError):
    code = "REFERENCE_CODE_DUPLICATE_ACTIVE"


class CodesAlreadyExist(ConflictError):
    code = "REFERENCE_CODES_ALREADY_EXIST"


class CodeSpaceExhausted(ConflictError):
    code = "REFERENCE_CODE_GENERATION_FAILED"


class WorkItemNotFound(NotFoundError):
    code = "ASSIGNMENT_WORK_ITEM_NOT_FOUND"


class InvalidRoleAssignment(ConflictError):
    code = "ASSIGNMENT_INVALID_ROLE"


class NotInHierarchy(ConflictError):
    code = "ASSIGNMENT_NOT_IN_HIERARCHY"


class AssignmentStateConflict(ConflictError):
    code = "ASSIGNMENT_STATE_CONFLICT"


class FinancialAccessDenied(PermissionDeniedError):
    code = "FINANCIAL_ACCESS_DENIED"
