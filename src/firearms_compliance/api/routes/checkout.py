"""Checkout endpoint."""

from fastapi import APIRouter, status

from firearms_compliance.api.dependencies import Checkout
from firearms_compliance.api.schemas import CheckoutCreate, CheckoutResponse, ErrorResponse
from firearms_compliance.compliance.evaluator import CartLine
from firearms_compliance.gateway.base import PaymentDetails
from firearms_compliance.services.checkout import CheckoutRequest

router = APIRouter(prefix="/checkout", tags=["checkout"])


@router.post(
    "",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        402: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
def submit_checkout(checkout: Checkout, payload: CheckoutCreate) -> CheckoutResponse:
    """Evaluate compliance, authorize payment and create the order."""
    request = CheckoutRequest(
        customer_id=payload.customer_id,
        lines=[
            CartLine(
                sku=line.sku,
                quantity=line.quantity,
                unit_price=line.unit_price,
                is_firearm=line.is_firearm,
                description=line.description,
            )
            for line in payload.lines
        ],
        payment_details=PaymentDetails(
            card_number=payload.payment.card_number,
            expiration_date=payload.payment.expiration_date,
            cvv=payload.payment.cvv,
            billing=payload.payment.billing,
        ),
        currency=payload.currency,
        ffl_license_number=payload.ffl_license_number,
    )
    result = checkout.submit(request)
    order, decision = result.order, result.decision

    return CheckoutResponse(
        order_id=order.order_id,
        order_number=order.order_number,
        status=order.status,
        hold_type=order.hold_type,
        amount=order.amount,
        auth_transaction_id=order.auth_transaction_id,
        capture_transaction_id=order.capture_transaction_id,
        hold_reason=decision.reason,
        ffl_license_number=order.ffl_license_number,
        ffl_status=order.ffl_status,
        firearm_count_in_window=decision.firearm_count_in_window,
        firearm_limit=decision.limit_at_evaluation,
        window_days=decision.window_days,
    )
