"""Order and staff action endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path

from firearms_compliance.api.dependencies import Orders, Staff, StaffActions
from firearms_compliance.api.schemas import (
    AttachFflRequest,
    ErrorResponse,
    ForceVoidRequest,
    OrderActivityResponse,
    OrderDetailResponse,
    OrderLineResponse,
    OrderResponse,
    OverrideHoldRequest,
    PaymentTransactionResponse,
)
from firearms_compliance.models import Order

router = APIRouter(prefix="/orders", tags=["orders"])

OrderId = Annotated[UUID, Path()]

_ERRORS = {
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


def _to_response(order: Order) -> OrderResponse:
    return OrderResponse.model_validate(order)


# ============================================================================
# Reads
# ============================================================================


@router.get(
    "/{order_id}",
    response_model=OrderDetailResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_order(orders: Orders, order_id: OrderId) -> OrderDetailResponse:
    """Get an order with its lines, payment trail and activity."""
    order = orders.get_order(order_id)
    summary = OrderResponse.model_validate(order)
    return OrderDetailResponse(
        **summary.model_dump(),
        lines=[OrderLineResponse.model_validate(line) for line in order.lines],
        transactions=[
            PaymentTransactionResponse.model_validate(tx)
            for tx in orders.list_transactions(order_id)
        ],
        activity=[OrderActivityResponse.model_validate(a) for a in order.activity],
    )


# ============================================================================
# Staff actions
# ============================================================================


@router.post("/{order_id}/attach-ffl", response_model=OrderResponse, responses=_ERRORS)
def attach_ffl(
    staff_actions: StaffActions,
    staff: Staff,
    order_id: OrderId,
    payload: AttachFflRequest,
) -> OrderResponse:
    """Attach an FFL dealer. The hold stays in place until verification."""
    return _to_response(staff_actions.attach_ffl(order_id, payload.license_number, staff=staff))


@router.post("/{order_id}/verify-ffl", response_model=OrderResponse, responses=_ERRORS)
def verify_ffl(staff_actions: StaffActions, staff: Staff, order_id: OrderId) -> OrderResponse:
    """Verify the attached FFL and resolve the FFL hold."""
    return _to_response(staff_actions.verify_ffl(order_id, staff=staff))


@router.post("/{order_id}/override-hold", response_model=OrderResponse, responses=_ERRORS)
def override_hold(
    staff_actions: StaffActions,
    staff: Staff,
    order_id: OrderId,
    payload: OverrideHoldRequest,
) -> OrderResponse:
    """Override a multi-firearm hold and capture payment."""
    return _to_response(staff_actions.override_hold(order_id, payload.reason, staff=staff))


@router.post("/{order_id}/force-void", response_model=OrderResponse, responses=_ERRORS)
def force_void(
    staff_actions: StaffActions,
    staff: Staff,
    order_id: OrderId,
    payload: ForceVoidRequest,
) -> OrderResponse:
    """Cancel an open order and release its authorization."""
    return _to_response(staff_actions.force_void(order_id, payload.reason, staff=staff))


@router.post("/{order_id}/retry-capture", response_model=OrderResponse, responses=_ERRORS)
def retry_capture(orders: Orders, staff: Staff, order_id: OrderId) -> OrderResponse:
    """Retry the capture of an order parked in capture_failed."""
    return _to_response(orders.retry_capture(order_id, actor=staff.staff_id))


@router.post("/{order_id}/fulfill", response_model=OrderResponse, responses=_ERRORS)
def fulfill(orders: Orders, staff: Staff, order_id: OrderId) -> OrderResponse:
    """Mark a paid order fulfilled."""
    return _to_response(orders.fulfill(order_id, actor=staff.staff_id))
