# src/domain/negotiation.py

"""
Pure rules of the booking thread.

Offer events form an append-only log per booking item. The item's current
price and version are projections of that log, and the booking status is a
projection over its items plus the agreement flags.
"""

from dataclasses import asdict, dataclass, replace
from typing import Any, Iterable, Mapping, Optional, Protocol, Sequence, Union

from src.domain.exceptions import ValidationFailedError
from src.domain.moderation import assert_no_contact_info, normalize_optional_text
from src.domain.state_machine import (
    ActorRole,
    BookingItemStatus,
    BookingStatus,
    OfferEventType,
)


NEGOTIATING_ROLES = (ActorRole.CUSTOMER, ActorRole.VENDOR)

_PROPOSER_BY_EVENT = {
    OfferEventType.REQUEST_CREATED: ActorRole.CUSTOMER,
    OfferEventType.CUSTOMER_COUNTERED: ActorRole.CUSTOMER,
    OfferEventType.VENDOR_COUNTERED: ActorRole.VENDOR,
}

PROPOSAL_EVENT_TYPES = frozenset(_PROPOSER_BY_EVENT)

SETTLED_ITEM_STATUSES = frozenset(
    {
        BookingItemStatus.AGREED,
        BookingItemStatus.DECLINED,
        BookingItemStatus.EXPIRED,
        BookingItemStatus.CANCELLED,
    }
)


class ItemLike(Protocol):
    status: BookingItemStatus
    is_required: bool


def proposer_of(event_type: Optional[OfferEventType]) -> Optional[ActorRole]:
    """Returns the party holding a proposal event, or None for non-proposals."""
    if event_type is None:
        return None
    return _PROPOSER_BY_EVENT.get(event_type)


def last_proposal_type(event_types: Sequence[OfferEventType]) -> Optional[OfferEventType]:
    for event_type in reversed(event_types):
        if event_type in PROPOSAL_EVENT_TYPES:
            return event_type
    return None


def can_actor_counter(
    last_proposal: Optional[OfferEventType],
    actor_role: ActorRole,
) -> bool:
    """
    A party may only counter when the other party holds the latest proposal.
    """
    if actor_role not in NEGOTIATING_ROLES:
        return False
    holder = proposer_of(last_proposal)
    if holder is None:
        return False
    return holder != actor_role


def can_actor_accept(
    last_proposal: Optional[OfferEventType],
    actor_role: ActorRole,
) -> bool:
    # Nobody accepts their own proposal; same rule as countering.
    return can_actor_counter(last_proposal, actor_role)


def countered_event_type(actor_role: ActorRole) -> OfferEventType:
    if actor_role == ActorRole.VENDOR:
        return OfferEventType.VENDOR_COUNTERED
    if actor_role == ActorRole.CUSTOMER:
        return OfferEventType.CUSTOMER_COUNTERED
    raise ValueError(f"{actor_role.value} cannot counter an offer")


def accepted_event_type(actor_role: ActorRole) -> OfferEventType:
    if actor_role == ActorRole.VENDOR:
        return OfferEventType.VENDOR_ACCEPTED
    if actor_role == ActorRole.CUSTOMER:
        return OfferEventType.CUSTOMER_ACCEPTED
    raise ValueError(f"{actor_role.value} cannot accept an offer")


def required_items(items: Iterable[ItemLike]) -> list:
    """
    Items flagged as required; when none is flagged every item is required.
    """
    items = list(items)
    flagged = [item for item in items if item.is_required]
    return flagged if flagged else items


def is_thread_settled(items: Iterable[ItemLike]) -> bool:
    return all(item.status in SETTLED_ITEM_STATUSES for item in items)


def ready_for_agreement(items: Iterable[ItemLike]) -> bool:
    """
    Terms are final: nothing is still under negotiation and every required
    item is agreed.
    """
    items = list(items)
    if not items or not is_thread_settled(items):
        return False
    return all(item.status == BookingItemStatus.AGREED for item in required_items(items))


def project_booking_status(
    current: BookingStatus,
    items: Iterable[ItemLike],
    customer_accepted: bool,
    vendor_accepted: bool,
) -> BookingStatus:
    """
    Recomputes booking status from its items and agreement flags.
    Terminal and post-acceptance statuses are left untouched.
    """
    if current in (
        BookingStatus.DECLINED,
        BookingStatus.EXPIRED,
        BookingStatus.CANCELLED,
        BookingStatus.COMPLETED,
    ):
        return current

    items = list(items)
    if not items:
        return BookingStatus.PENDING

    required = required_items(items)
    statuses = [item.status for item in required]

    if BookingItemStatus.DECLINED in statuses:
        return BookingStatus.DECLINED
    if BookingItemStatus.EXPIRED in statuses:
        return BookingStatus.EXPIRED
    if BookingItemStatus.CANCELLED in statuses:
        return BookingStatus.CANCELLED

    agreed = sum(1 for status in statuses if status == BookingItemStatus.AGREED)
    if agreed == len(required):
        if customer_accepted and vendor_accepted:
            return BookingStatus.ACCEPTED
        return BookingStatus.PENDING
    if agreed > 0:
        return BookingStatus.PARTIALLY_ACCEPTED
    return BookingStatus.PENDING


MAX_BREAKDOWN_NOTES_LENGTH = 500


@dataclass(frozen=True)
class PriceBreakdown:
    """Itemised extras a party attaches to a proposal."""

    travel_fee_cents: Optional[int] = None
    extra_hours: Optional[float] = None
    equipment_fee_cents: Optional[int] = None
    notes: Optional[str] = None


def breakdown_payload(
    breakdown: Union[PriceBreakdown, Mapping[str, Any], None],
) -> Optional[dict]:
    """
    Validates a proposal breakdown and returns what gets stored on the offer
    event. Notes are moderated like a counter-offer reason.
    """
    if breakdown is None:
        return None
    if not isinstance(breakdown, PriceBreakdown):
        if not isinstance(breakdown, Mapping):
            raise ValidationFailedError("Breakdown must be an object")
        try:
            breakdown = PriceBreakdown(**breakdown)
        except TypeError as exc:
            raise ValidationFailedError(f"Unsupported breakdown field: {exc}") from exc

    for name in ("travel_fee_cents", "equipment_fee_cents"):
        value = getattr(breakdown, name)
        if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value < 0):
            raise ValidationFailedError(f"{name} must be a non-negative whole amount")
    hours = breakdown.extra_hours
    if hours is not None and (isinstance(hours, bool) or not isinstance(hours, (int, float)) or hours < 0):
        raise ValidationFailedError("extra_hours must be a non-negative number")
    if breakdown.notes is not None and not isinstance(breakdown.notes, str):
        raise ValidationFailedError("notes must be text")

    notes = normalize_optional_text(breakdown.notes, max_length=MAX_BREAKDOWN_NOTES_LENGTH)
    assert_no_contact_info(notes)

    payload = {
        key: value
        for key, value in asdict(replace(breakdown, notes=notes)).items()
        if value is not None
    }
    return payload or None
