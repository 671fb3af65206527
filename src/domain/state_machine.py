# src/domain/state_machine.py

from enum import Enum
from typing import ClassVar, Dict, Set, Type

from src.domain.exceptions import InvalidStateTransitionError


class RequestStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class RequestClosedReason(str, Enum):
    OFFER_ACCEPTED = "offer_accepted"
    TIME_LIMIT = "time_limit"
    CUSTOMER_CANCELLED = "customer_cancelled"


class OfferStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    IGNORED = "ignored"


class OfferPaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class BookingStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    PARTIALLY_ACCEPTED = "partially_accepted"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class BookingItemStatus(str, Enum):
    REQUESTED = "requested"
    COUNTERED = "countered"
    AGREED = "agreed"
    DECLINED = "declined"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class ActorRole(str, Enum):
    CUSTOMER = "customer"
    VENDOR = "vendor"
    SYSTEM = "system"
    ADMIN = "admin"


class OfferEventType(str, Enum):
    REQUEST_CREATED = "request_created"
    VENDOR_COUNTERED = "vendor_countered"
    CUSTOMER_COUNTERED = "customer_countered"
    VENDOR_ACCEPTED = "vendor_accepted"
    CUSTOMER_ACCEPTED = "customer_accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    ISSUED = "issued"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    VOID = "void"


class PaymentOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class ConnectOnboardingStatus(str, Enum):
    NOT_STARTED = "not_started"
    PENDING = "pending"
    COMPLETE = "complete"


class AvailabilityStatus(str, Enum):
    AVAILABLE = "available"
    BLOCKED = "blocked"


class StateMachine:
    """
    Central lifecycle controller for status transitions.
    Subclasses declare the status enum and the legal transitions.
    """

    status_type: ClassVar[Type[Enum]]
    _ALLOWED_TRANSITIONS: ClassVar[Dict[Enum, Set[Enum]]] = {}

    @classmethod
    def can_transition(cls, from_status: Enum, to_status: Enum) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(cls, from_status: Enum, to_status: Enum) -> None:
        """
        Raises InvalidStateTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
            )

    @classmethod
    def is_terminal(cls, status: Enum) -> bool:
        """
        Returns True if the state is terminal (no further transitions allowed).
        """
        cls._ensure_valid_status(status)
        return len(cls._ALLOWED_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def get_allowed_transitions(cls, status: Enum) -> Set[Enum]:
        """
        Returns allowed next states from current state.
        """
        cls._ensure_valid_status(status)
        return cls._ALLOWED_TRANSITIONS.get(status, set())

    @classmethod
    def _ensure_valid_status(cls, status: Enum) -> None:
        if not isinstance(status, cls.status_type):
            raise TypeError(
                f"Expected {cls.status_type.__name__}, got {type(status)}"
            )


class RequestStateMachine(StateMachine):
    """Requests only move forward; they are never reopened."""

    status_type = RequestStatus
    _ALLOWED_TRANSITIONS = {
        RequestStatus.OPEN: {
            RequestStatus.CLOSED,
            RequestStatus.EXPIRED,
            RequestStatus.CANCELLED,
        },
        RequestStatus.CLOSED: set(),
        RequestStatus.EXPIRED: set(),
        RequestStatus.CANCELLED: set(),
    }


class OfferStateMachine(StateMachine):
    status_type = OfferStatus
    _ALLOWED_TRANSITIONS = {
        OfferStatus.PENDING: {
            OfferStatus.ACCEPTED,
            OfferStatus.DECLINED,
            OfferStatus.IGNORED,
        },
        OfferStatus.ACCEPTED: set(),
        OfferStatus.DECLINED: set(),
        OfferStatus.IGNORED: set(),
    }


class OfferPaymentStateMachine(StateMachine):
    status_type = OfferPaymentStatus
    _ALLOWED_TRANSITIONS = {
        OfferPaymentStatus.UNPAID: {OfferPaymentStatus.PENDING},
        OfferPaymentStatus.PENDING: {
            OfferPaymentStatus.PAID,
            OfferPaymentStatus.FAILED,
        },
        # A failed payment can be retried through a fresh checkout.
        OfferPaymentStatus.FAILED: {
            OfferPaymentStatus.PENDING,
            OfferPaymentStatus.PAID,
        },
        OfferPaymentStatus.PAID: set(),
    }


class BookingItemStateMachine(StateMachine):
    """
    Items are negotiable while requested or countered.
    Agreed, declined, expired and cancelled items are immutable.
    """

    status_type = BookingItemStatus
    _NEGOTIATION_EXITS = {
        BookingItemStatus.COUNTERED,
        BookingItemStatus.AGREED,
        BookingItemStatus.DECLINED,
        BookingItemStatus.EXPIRED,
        BookingItemStatus.CANCELLED,
    }
    _ALLOWED_TRANSITIONS = {
        BookingItemStatus.REQUESTED: _NEGOTIATION_EXITS,
        BookingItemStatus.COUNTERED: _NEGOTIATION_EXITS,
        BookingItemStatus.AGREED: set(),
        BookingItemStatus.DECLINED: set(),
        BookingItemStatus.EXPIRED: set(),
        BookingItemStatus.CANCELLED: set(),
    }

    @classmethod
    def is_negotiable(cls, status: BookingItemStatus) -> bool:
        cls._ensure_valid_status(status)
        return status in (BookingItemStatus.REQUESTED, BookingItemStatus.COUNTERED)


class BookingStateMachine(StateMachine):
    """
    Booking status is projected from its items; this table bounds
    which projections may be persisted.
    """

    status_type = BookingStatus
    _ALLOWED_TRANSITIONS = {
        BookingStatus.DRAFT: {
            BookingStatus.PENDING,
            BookingStatus.CANCELLED,
        },
        BookingStatus.PENDING: {
            BookingStatus.PARTIALLY_ACCEPTED,
            BookingStatus.ACCEPTED,
            BookingStatus.DECLINED,
            BookingStatus.EXPIRED,
            BookingStatus.CANCELLED,
        },
        BookingStatus.PARTIALLY_ACCEPTED: {
            BookingStatus.PENDING,
            BookingStatus.ACCEPTED,
            BookingStatus.DECLINED,
            BookingStatus.EXPIRED,
            BookingStatus.CANCELLED,
        },
        BookingStatus.ACCEPTED: {
            BookingStatus.COMPLETED,
            BookingStatus.CANCELLED,
        },
        BookingStatus.DECLINED: set(),
        BookingStatus.EXPIRED: set(),
        BookingStatus.CANCELLED: set(),
        BookingStatus.COMPLETED: set(),
    }

    @classmethod
    def is_negotiating(cls, status: BookingStatus) -> bool:
        cls._ensure_valid_status(status)
        return status in (BookingStatus.PENDING, BookingStatus.PARTIALLY_ACCEPTED)


class InvoiceStateMachine(StateMachine):
    status_type = InvoiceStatus
    _ALLOWED_TRANSITIONS = {
        InvoiceStatus.DRAFT: {
            InvoiceStatus.ISSUED,
            InvoiceStatus.VOID,
        },
        InvoiceStatus.ISSUED: {
            InvoiceStatus.PAID,
            InvoiceStatus.FAILED,
            InvoiceStatus.VOID,
        },
        # Processors may deliver a late success after a failure.
        InvoiceStatus.FAILED: {
            InvoiceStatus.PAID,
            InvoiceStatus.VOID,
        },
        InvoiceStatus.PAID: {InvoiceStatus.REFUNDED},
        InvoiceStatus.REFUNDED: set(),
        InvoiceStatus.VOID: set(),
    }


class PayoutStateMachine(StateMachine):
    status_type = PayoutStatus
    _ALLOWED_TRANSITIONS = {
        PayoutStatus.PENDING: {
            PayoutStatus.PAID,
            PayoutStatus.FAILED,
        },
        PayoutStatus.PAID: set(),
        PayoutStatus.FAILED: set(),
    }
