"""Checkout entry point: validate, evaluate compliance, create the order."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Sequence

from sqlalchemy.orm import Session

from firearms_compliance.compliance.evaluator import CartLine, ComplianceEvaluator, HoldDecision
from firearms_compliance.compliance.settings_store import ComplianceConfigStore
from firearms_compliance.exceptions import ValidationError
from firearms_compliance.ffl import (
    FflDealerRef,
    FflDirectory,
    normalize_license_number,
    verified_ffl_on_file,
)
from firearms_compliance.gateway.base import PaymentDetails
from firearms_compliance.models import Order
from firearms_compliance.services.order_service import OrderDraft, OrderService
from firearms_compliance.services.state_machine import FflStatus
from firearms_compliance.time_utils import Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutRequest:
    """A submitted cart."""

    customer_id: str
    lines: Sequence[CartLine]
    payment_details: PaymentDetails
    currency: str = "USD"
    ffl_license_number: str | None = None


@dataclass(frozen=True)
class CheckoutResult:
    """The created order and the compliance decision it was created under."""

    order: Order
    decision: HoldDecision


class CheckoutService:
    """Runs a checkout end to end.

    The policy snapshot is read once and used for the whole evaluation, so a
    concurrent policy update never produces a mixed decision.
    """

    def __init__(
        self,
        session: Session,
        config_store: ComplianceConfigStore,
        order_service: OrderService,
        ffl_directory: FflDirectory | None = None,
        clock: Clock = utcnow,
    ):
        self.session = session
        self.config_store = config_store
        self.order_service = order_service
        self.ffl_directory = ffl_directory
        self.evaluator = ComplianceEvaluator(session, config_store, clock=clock)

    def submit(self, request: CheckoutRequest) -> CheckoutResult:
        """Validate the cart, evaluate holds and create the order.

        Raises:
            ValidationError: invalid cart or unusable FFL dealer; nothing was
                written.
            PaymentDeclinedError / PaymentUnavailableError: from authorization.
        """
        lines = self.validate(request)
        customer_id = request.customer_id.strip()
        selected = self._selected_dealer(request)

        settings = self.config_store.get()
        decision = self.evaluator.evaluate(
            customer_id,
            lines,
            settings=settings,
            ffl_license_number=selected.license_number if selected is not None else None,
        )

        draft = OrderDraft(
            customer_id=customer_id,
            lines=lines,
            payment_details=request.payment_details,
            currency=request.currency.upper(),
            ffl=self._order_ffl(customer_id, selected),
        )
        order = self.order_service.create(draft, decision)
        return CheckoutResult(order=order, decision=decision)

    def _selected_dealer(self, request: CheckoutRequest) -> FflDealerRef | None:
        """The dealer picked at checkout, checked against the directory."""
        if request.ffl_license_number is None:
            return None
        license_number = normalize_license_number(request.ffl_license_number)
        if not license_number:
            return None
        if self.ffl_directory is None:
            raise ValidationError("FFL directory unavailable", field="ffl_license_number")

        listing = self.ffl_directory.lookup(license_number)
        if listing is None:
            raise ValidationError(f"FFL {license_number} not found", field="ffl_license_number")
        if not listing.is_active:
            raise ValidationError(f"FFL {license_number} is not active", field="ffl_license_number")
        return FflDealerRef(
            license_number=license_number,
            business_name=listing.business_name,
            status=FflStatus.PENDING_VERIFICATION.value,
        )

    def _order_ffl(self, customer_id: str, selected: FflDealerRef | None) -> FflDealerRef | None:
        """Verified on file wins; a newly picked dealer still needs staff verification."""
        on_file = verified_ffl_on_file(
            self.session,
            customer_id,
            license_number=selected.license_number if selected is not None else None,
        )
        if on_file is None:
            return selected
        return FflDealerRef(
            license_number=on_file.license_number,
            business_name=on_file.business_name,
            status=FflStatus.VERIFIED.value,
        )

    @staticmethod
    def validate(request: CheckoutRequest) -> tuple[CartLine, ...]:
        """Check the cart, returning its lines as an immutable tuple."""
        if not request.customer_id or not request.customer_id.strip():
            raise ValidationError("customer_id is required", field="customer_id")
        if len(request.currency) != 3 or not request.currency.isalpha():
            raise ValidationError("currency must be a 3-letter code", field="currency")

        lines = tuple(request.lines)
        if not lines:
            raise ValidationError("Cart is empty", field="lines")

        for index, line in enumerate(lines):
            if not line.sku:
                raise ValidationError(f"lines[{index}].sku is required", field="lines")
            if isinstance(line.quantity, bool) or not isinstance(line.quantity, int) or line.quantity <= 0:
                raise ValidationError(f"lines[{index}].quantity must be a positive integer", field="lines")
            if not isinstance(line.unit_price, Decimal) or line.unit_price < 0:
                raise ValidationError(f"lines[{index}].unit_price must be >= 0", field="lines")

        if sum((line.line_total for line in lines), Decimal("0")) <= 0:
            raise ValidationError("Order total must be greater than 0", field="lines")
        return lines
