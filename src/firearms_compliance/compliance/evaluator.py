"""Rolling-window firearm purchase evaluation.

For a proposed cart, count the firearm units the customer bought inside the
trailing policy window, add the cart's firearm units, and decide which hold
(if any) the order must be placed on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from firearms_compliance.compliance.settings_store import ComplianceConfigStore, ComplianceSettings
from firearms_compliance.models import CustomerFfl, Order, OrderLine
from firearms_compliance.time_utils import Clock, utcnow

logger = logging.getLogger(__name__)


class HoldType(str, Enum):
    """Closed set of hold kinds an order can be placed on."""

    NONE = "none"
    FFL_REQUIRED = "ffl_required"
    MULTI_FIREARM = "multi_firearm"


@dataclass(frozen=True)
class CartLine:
    """A line of the cart submitted at checkout."""

    sku: str
    quantity: int
    unit_price: Decimal
    is_firearm: bool
    description: str | None = None

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class HoldDecision:
    """Outcome of a compliance evaluation.

    ``firearm_count_in_window`` is prior window units plus cart units.
    ``multi_firearm_exceeded`` is kept even when the FFL hold wins precedence,
    so the multi-firearm condition is still enforced once the FFL clears.
    """

    hold_type: HoldType
    firearm_count_in_window: int
    limit_at_evaluation: int
    window_days: int
    prior_firearm_count: int
    cart_firearm_count: int
    multi_firearm_exceeded: bool
    ffl_missing: bool
    settings_version: int
    evaluated_at: datetime
    reason: str | None = None

    @property
    def requires_hold(self) -> bool:
        return self.hold_type is not HoldType.NONE


class ComplianceEvaluator:
    """Computes hold decisions from order history and the active policy."""

    # Voided orders never count toward the limit.
    EXCLUDED_STATUSES = ("voided",)

    def __init__(
        self,
        session: Session,
        config_store: ComplianceConfigStore,
        clock: Clock = utcnow,
    ):
        self.session = session
        self.config_store = config_store
        self.clock = clock

    def evaluate(
        self,
        customer_id: str,
        cart_lines: Iterable[CartLine],
        *,
        settings: ComplianceSettings | None = None,
        ffl_license_number: str | None = None,
    ) -> HoldDecision:
        """Decide whether a checkout must be held and why.

        When the checkout names an FFL dealer, only that dealer verified for
        this customer satisfies the FFL requirement.
        """
        policy = settings or self.config_store.get()
        now = self.clock()
        lines = list(cart_lines)
        cart_firearms = sum(line.quantity for line in lines if line.is_firearm)

        if cart_firearms == 0:
            # The limit only applies to attempted firearm purchases.
            return HoldDecision(
                hold_type=HoldType.NONE,
                firearm_count_in_window=0,
                limit_at_evaluation=policy.firearm_limit,
                window_days=policy.window_days,
                prior_firearm_count=0,
                cart_firearm_count=0,
                multi_firearm_exceeded=False,
                ffl_missing=False,
                settings_version=policy.version,
                evaluated_at=now,
            )

        prior = self.count_prior_firearms(customer_id, policy.window_days, now=now)
        total = prior + cart_firearms

        multi_exceeded = policy.multi_firearm_hold_enabled and total > policy.firearm_limit
        ffl_missing = policy.ffl_hold_enabled and not self.has_verified_ffl(
            customer_id, license_number=ffl_license_number
        )

        # FFL takes precedence: it determines consignee routing.
        if ffl_missing:
            hold_type = HoldType.FFL_REQUIRED
            reason = (
                f"FFL {ffl_license_number} is not verified"
                if ffl_license_number
                else "No verified FFL on file"
            )
        elif multi_exceeded:
            hold_type = HoldType.MULTI_FIREARM
            reason = (
                f"Would exceed limit of {policy.firearm_limit} firearms "
                f"in {policy.window_days} days"
            )
        else:
            hold_type = HoldType.NONE
            reason = None

        decision = HoldDecision(
            hold_type=hold_type,
            firearm_count_in_window=total,
            limit_at_evaluation=policy.firearm_limit,
            window_days=policy.window_days,
            prior_firearm_count=prior,
            cart_firearm_count=cart_firearms,
            multi_firearm_exceeded=multi_exceeded,
            ffl_missing=ffl_missing,
            settings_version=policy.version,
            evaluated_at=now,
            reason=reason,
        )
        logger.info(
            "Compliance evaluation for customer %s: hold=%s count=%s/%s window=%sd policy=v%s",
            customer_id,
            hold_type.value,
            total,
            policy.firearm_limit,
            policy.window_days,
            policy.version,
        )
        return decision

    def count_prior_firearms(
        self,
        customer_id: str,
        window_days: int,
        *,
        now: datetime | None = None,
    ) -> int:
        """Firearm units on the customer's non-voided orders in [now - window, now]."""
        now = now or self.clock()
        cutoff = now - timedelta(days=window_days)
        total = self.session.scalar(
            select(func.coalesce(func.sum(OrderLine.quantity), 0))
            .join(Order, OrderLine.order_id == Order.order_id)
            .where(
                Order.customer_id == customer_id,
                OrderLine.is_firearm.is_(True),
                Order.status.not_in(self.EXCLUDED_STATUSES),
                Order.created_at >= cutoff,
                Order.created_at <= now,
            )
        )
        return int(total or 0)

    def has_verified_ffl(self, customer_id: str, *, license_number: str | None = None) -> bool:
        """Whether the customer has a verified FFL dealer (optionally a specific one) on file."""
        query = select(CustomerFfl.customer_ffl_id).where(
            CustomerFfl.customer_id == customer_id,
            CustomerFfl.verified_at.is_not(None),
        )
        if license_number is not None:
            query = query.where(CustomerFfl.license_number == license_number)
        return self.session.scalar(query.limit(1)) is not None
