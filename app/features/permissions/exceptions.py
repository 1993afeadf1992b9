from typing import TYPE_CHECKING, Optional, Sequence

from fastapi import HTTPException, status

if TYPE_CHECKING:
    from app.features.permissions.evaluator import Decision


class MalformedContextError(ValueError):
    """The caller built an access context the engine cannot evaluate."""


class PermissionDenied(HTTPException):
    def __init__(
        self,
        decision: "Decision",
        message: str = "Insufficient permissions",
        permissions: Optional[Sequence[str]] = None,
    ):
        if permissions is None:
            permissions = decision.matched_permissions
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "message": message,
                "reason": decision.reason.value,
                "permissions": list(permissions),
            },
        )
        self.decision = decision
