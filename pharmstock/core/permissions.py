from dataclasses import dataclass, field
from typing import List, Optional
from fastapi import Request

from pharmstock.core.exceptions import AuthenticationError, AuthorizationError
from pharmstock.core.security import verify_token


class Permissions:
    """Permission constants for the pharmacy stock ledger"""

    # Requisitions
    REQUISITIONS_CREATE = "requisitions:create"
    REQUISITIONS_READ = "requisitions:read"
    REQUISITIONS_APPROVE = "requisitions:approve"
    REQUISITIONS_FULFILL = "requisitions:fulfill"
    REQUISITIONS_CANCEL = "requisitions:cancel"

    # Stock ledger
    STOCK_READ = "stock:read"
    STOCK_ADJUST = "stock:adjust"
    STOCK_RECEIVE = "stock:receive"

    # System
    SYSTEM_ADMIN = "system:admin"


@dataclass(frozen=True)
class CurrentUser:
    """Identity supplied by the auth provider for every call"""
    user_id: str
    hospital_id: str
    role: Optional[str] = None
    permissions: List[str] = field(default_factory=list)

    def has_any(self, required_permissions: List[str]) -> bool:
        if Permissions.SYSTEM_ADMIN in self.permissions:
            return True
        return any(perm in self.permissions for perm in required_permissions)


def get_current_user(request: Request) -> CurrentUser:
    """Extract and validate user from request"""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise AuthenticationError("Authentication required")

    token = auth_header.split(" ", 1)[1]
    payload = verify_token(token, "access")

    if not payload:
        raise AuthenticationError("Invalid or expired token")

    if not payload.get("sub") or not payload.get("hospital_id"):
        raise AuthenticationError("Token is missing user or hospital scope")

    return CurrentUser(
        user_id=str(payload["sub"]),
        hospital_id=str(payload["hospital_id"]),
        role=payload.get("role"),
        permissions=list(payload.get("permissions", [])),
    )


def require_permissions(required_permissions: List[str]):
    """Dependency function to check permissions"""
    def permission_checker(request: Request) -> CurrentUser:
        user = get_current_user(request)
        request.state.user = user

        # Check if user has any of the required permissions
        if not user.has_any(required_permissions):
            raise AuthorizationError(
                "Insufficient permissions",
                details={"required_permissions": required_permissions},
            )

        return user

    return permission_checker
