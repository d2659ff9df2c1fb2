"""
FastAPI dependencies.

Authentication happens upstream; the gateway in front of this service sets
the X-Staff-* headers and the API trusts them.
"""
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from laundry_ops.domain.actors import Actor
from laundry_ops.domain.enums import StaffRole
from laundry_ops.services import ServiceContainer


def get_services(request: Request) -> ServiceContainer:
    """Service container built at startup."""
    return request.app.state.services


def get_actor(
    x_staff_id: Optional[int] = Header(default=None),
    x_staff_role: Optional[str] = Header(default=None),
    x_staff_email: Optional[str] = Header(default=None),
) -> Actor:
    """
    Resolve the acting staff member from trusted headers.

    Raises:
        HTTPException: 401 if the role header is missing, 400 if it is unknown
    """
    if not x_staff_role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Staff-Role header is required",
        )
    try:
        role = StaffRole(x_staff_role.strip().upper())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown staff role: {x_staff_role}",
        )
    if role is StaffRole.SYSTEM:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="SYSTEM role cannot be used by API callers",
        )
    return Actor(staff_id=x_staff_id, role=role, email=x_staff_email)


def get_admin_actor(actor: Actor = Depends(get_actor)) -> Actor:
    """Acting staff member, who must be SUPER_ADMIN or OPERATION_MANAGER."""
    if not actor.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return actor
