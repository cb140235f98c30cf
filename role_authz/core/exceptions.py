class RoleAuthzException(Exception):
    """Base exception for the authorization core"""

    code = "role_authz_error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.code)


class NotFoundException(RoleAuthzException):
    """Raised when a referenced record is missing"""

    code = "not_found"


class RoleNotFoundException(NotFoundException):
    code = "role_not_found"


class AssignmentNotFoundException(NotFoundException):
    code = "assignment_not_found"


class ForbiddenException(RoleAuthzException):
    """Raised when a protection rule refuses the operation"""

    code = "forbidden"


class OwnerRoleProtectedException(ForbiddenException):
    """Raised when Owner is granted outside first-owner election"""

    code = "owner_role_protected"


class SystemRoleProtectedException(ForbiddenException):
    """Raised when deleting a system role"""

    code = "system_role_protected"


class LastOwnerException(ForbiddenException):
    """Raised when an operation would leave no active Owner"""

    code = "cannot_remove_last_owner"

    def __init__(self, message: str | None = None, code: str | None = None):
        if code is not None:
            self.code = code
        super().__init__(message)


class ConflictException(RoleAuthzException):
    code = "conflict"


class RoleInUseException(ConflictException):
    """Raised when deleting a role that still has assignments"""

    code = "role_in_use"


class ValidationException(RoleAuthzException):
    """Raised for business logic validation errors"""

    code = "validation"


class RoleValidationException(ValidationException):
    """
    Raised when role attributes fail validation.

    Carries field-level errors so callers can render them per field:
    {"name": ["has already been taken"]}
    """

    def __init__(self, errors: dict[str, list[str]]):
        self.errors = errors
        details = "; ".join(f"{field}: {', '.join(msgs)}" for field, msgs in errors.items())
        super().__init__(details)


class NoRoleToDemoteException(ValidationException):
    code = "no_role_to_demote"


class StoreUnavailableException(RoleAuthzException):
    """
    Raised when the database fails for infrastructure reasons.

    Distinct from policy errors: lock timeouts and dropped connections are
    transient and the caller may retry.
    """

    code = "store_unavailable"
    retryable = True
