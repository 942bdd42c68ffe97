from __future__ import annotations


class AuthzError(Exception):
    pass


class UnauthenticatedError(AuthzError):
    pass


class ForbiddenError(AuthzError):
    pass


class NotFoundError(AuthzError):
    pass


class ConflictError(AuthzError):
    pass


class InvalidArgumentError(AuthzError):
    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class InconsistentError(AuthzError):
    """Stored authorization configuration is corrupt (e.g. cyclic role inheritance)."""

    def __init__(self, message: str, detail: dict[str, object] | None = None) -> None:
        super().__init__(message)
        self.detail = detail or {}


class AuditWriteError(AuthzError):
    pass
