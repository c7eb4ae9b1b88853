"""
Security guards for role-based and ownership-based access control.
"""

from typing import List
from fastapi import Depends, HTTPException, status
from freight_backend.app.models.enums import UserRole
from freight_backend.app.core.dependencies import get_current_user


def require_role(allowed_roles: List[UserRole]):
    """
    Dependency factory for role-based access control.

    Usage:
        @router.post("/broadcasts")
        async def create(current_user: dict = Depends(require_role([UserRole.CUSTOMER]))):
            ...

    Raises:
        HTTPException 403 if user role is not in allowed_roles
    """
    async def role_checker(current_user: dict = Depends(get_current_user)) -> dict:
        user_role = UserRole(current_user["role"])

        if user_role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required role: {', '.join([r.value for r in allowed_roles])}"
            )

        return current_user

    return role_checker


def require_admin(current_user: dict = Depends(get_current_user)) -> dict:
    """Dependency for admin-only endpoints."""
    if current_user.get("role") != UserRole.ADMIN.value:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )

    return current_user


def verify_ownership(resource_owner_id: int, current_user: dict) -> bool:
    """
    Verify that the current user owns the resource.

    Admins can access everything; everyone else only what carries their id.
    """
    if current_user.get("role") == UserRole.ADMIN.value:
        return True
    return current_user.get("user_id") == resource_owner_id


class OwnershipGuard:
    """
    Class-based ownership guard for validating multi-tenant access.

    Usage:
        ownership_guard.enforce(broadcast.customer_id, current_user, "broadcast")
    """

    def enforce(
        self,
        resource_owner_id: int,
        current_user: dict,
        resource_name: str = "resource"
    ):
        """
        Enforce ownership validation, raise 403 if access denied.
        """
        if not verify_ownership(resource_owner_id, current_user):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. You do not have permission to access this {resource_name}."
            )

    def enforce_any(self, owner_ids, current_user: dict, resource_name: str = "resource"):
        """Allow access when the caller owns any of the given ids."""
        if not any(verify_ownership(owner_id, current_user) for owner_id in owner_ids if owner_id is not None):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. You do not have permission to access this {resource_name}."
            )


ownership_guard = OwnershipGuard()
