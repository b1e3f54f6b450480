"""FastAPI dependencies for dependency injection."""

from collections.abc import Iterator
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from firearms_compliance.exceptions import ValidationError
from firearms_compliance.runtime import Runtime
from firearms_compliance.services.checkout import CheckoutService
from firearms_compliance.services.order_service import OrderService
from firearms_compliance.services.staff_actions import StaffActionService, StaffPrincipal


def get_runtime(request: Request) -> Runtime:
    """Runtime attached to the application."""
    return request.app.state.runtime


AppRuntime = Annotated[Runtime, Depends(get_runtime)]


def get_db_session(runtime: AppRuntime) -> Iterator[Session]:
    """Get database session dependency."""
    with runtime.session_factory() as session:
        yield session


def get_staff(x_staff_id: Annotated[str | None, Header()] = None) -> StaffPrincipal:
    """Extract the authenticated staff member from header."""
    if not x_staff_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Staff-ID header is required",
        )
    try:
        return StaffPrincipal(staff_id=x_staff_id.strip())
    except ValidationError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid X-Staff-ID",
        )


# Type aliases for cleaner dependency injection
DbSession = Annotated[Session, Depends(get_db_session)]
Staff = Annotated[StaffPrincipal, Depends(get_staff)]


def get_order_service(runtime: AppRuntime, db: DbSession) -> OrderService:
    return runtime.order_service(db)


def get_checkout_service(runtime: AppRuntime, db: DbSession) -> CheckoutService:
    return runtime.checkout_service(db)


def get_staff_actions(runtime: AppRuntime, db: DbSession) -> StaffActionService:
    return runtime.staff_actions(db)


Orders = Annotated[OrderService, Depends(get_order_service)]
Checkout = Annotated[CheckoutService, Depends(get_checkout_service)]
StaffActions = Annotated[StaffActionService, Depends(get_staff_actions)]
