"""FFL dealer references and the directory interface.

The dealer directory itself (search, geocoding, license imports) is an
external collaborator; this module only defines what the order workflow
needs from it.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Protocol, runtime_checkable

from sqlalchemy import select
from sqlalchemy.orm import Session

from firearms_compliance.models import CustomerFfl

if TYPE_CHECKING:
    from firearms_compliance.models import Order

logger = logging.getLogger(__name__)


def normalize_license_number(value: str) -> str:
    """Canonical form for comparing license numbers."""
    return value.strip().upper()


@dataclass(frozen=True)
class FflListing:
    """A dealer as published by the FFL directory."""

    license_number: str
    business_name: str
    is_active: bool = True


@dataclass(frozen=True)
class FflDealerRef:
    """The FFL dealer attached to an order."""

    license_number: str
    business_name: str | None
    status: str

    @classmethod
    def from_order(cls, order: Order) -> FflDealerRef | None:
        if not order.ffl_license_number:
            return None
        return cls(
            license_number=order.ffl_license_number,
            business_name=order.ffl_business_name,
            status=order.ffl_status,
        )


@runtime_checkable
class FflDirectory(Protocol):
    """Lookup of FFL dealers by license number."""

    def lookup(self, license_number: str) -> FflListing | None:
        """Return the listing, or None when the license is unknown."""
        ...


class StaticFflDirectory:
    """In-memory directory, optionally seeded from a JSON file."""

    def __init__(self, listings: Iterable[FflListing] = ()):
        self._listings: dict[str, FflListing] = {}
        for listing in listings:
            self.add(listing)

    @classmethod
    def from_json_file(cls, path: str | Path) -> StaticFflDirectory:
        """Load ``[{"license_number": ..., "business_name": ..., "is_active": ...}, ...]``."""
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        directory = cls(
            FflListing(
                license_number=item["license_number"],
                business_name=item["business_name"],
                is_active=bool(item.get("is_active", True)),
            )
            for item in raw
        )
        logger.info("Loaded %s FFL listing(s) from %s", len(directory._listings), path)
        return directory

    def add(self, listing: FflListing) -> None:
        self._listings[normalize_license_number(listing.license_number)] = listing

    def lookup(self, license_number: str) -> FflListing | None:
        return self._listings.get(normalize_license_number(license_number))


def verified_ffl_on_file(
    session: Session, customer_id: str, *, license_number: str | None = None
) -> CustomerFfl | None:
    """Most recently verified FFL for a customer (optionally a specific dealer), if any."""
    query = select(CustomerFfl).where(
        CustomerFfl.customer_id == customer_id,
        CustomerFfl.verified_at.is_not(None),
    )
    if license_number is not None:
        query = query.where(CustomerFfl.license_number == license_number)
    return session.scalars(query.order_by(CustomerFfl.verified_at.desc()).limit(1)).first()
