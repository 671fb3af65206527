

class MarketplaceEngineError(Exception):
    """
    Base exception for all domain-level errors
    inside the Marketplace Negotiation Engine.
    """

    status_code = 500
    code = "internal_error"
    # When set, the unit of work commits before the error reaches the caller.
    keeps_changes = False


class NotFoundError(MarketplaceEngineError):
    """Raised when an id does not resolve to a stored aggregate."""

    status_code = 404
    code = "not_found"

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class InvalidStateError(MarketplaceEngineError):
    """Operation is not legal for the aggregate's current status."""

    status_code = 409
    code = "invalid_state"


class InvalidStateTransitionError(InvalidStateError):
    """
    Raised when an illegal state transition is attempted.
    """

    code = "invalid_state_transition"

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class RequestNotOpenError(InvalidStateError):
    code = "request_not_open"


class RequestAlreadyClosedError(InvalidStateError):
    code = "request_already_closed"


class RequestExpiredError(InvalidStateError):
    code = "request_expired"


class DeadlinePassedError(RequestExpiredError):
    """The response deadline passed; the request has been expired."""

    code = "deadline_passed"
    keeps_changes = True


class ItemNotNegotiableError(InvalidStateError):
    code = "item_not_negotiable"


class BookingNotNegotiableError(InvalidStateError):
    code = "booking_not_negotiable"


class CheckoutNotAllowedError(InvalidStateError):
    code = "checkout_not_allowed"


class DateUnavailableError(InvalidStateError):
    """Raised when a calendar date is already blocked for a resource."""

    code = "date_unavailable"

    def __init__(self, resource_id: str, day):
        self.resource_id = resource_id
        self.day = day
        super().__init__(f"Date {day} is not available for {resource_id}")


class FlowDisabledError(InvalidStateError):
    code = "flow_disabled"


class ConflictError(MarketplaceEngineError):
    """The caller acted on outdated state and must refetch and retry."""

    status_code = 409
    code = "conflict"


class StaleOfferVersionError(ConflictError):
    code = "stale_offer_version"

    def __init__(self, expected: int, current: int):
        self.expected = expected
        self.current = current
        super().__init__(
            f"Offer updated, please review latest: "
            f"expected version {expected}, current version {current}"
        )


class StaleAgreementVersionError(ConflictError):
    code = "stale_agreement_version"

    def __init__(self, expected: int, current: int):
        self.expected = expected
        self.current = current
        super().__init__(
            f"Agreement terms changed: "
            f"expected version {expected}, current version {current}"
        )


class NotYourTurnError(ConflictError):
    code = "not_your_turn"


class DuplicateOfferError(ConflictError):
    code = "duplicate_offer"


class InvoiceAlreadyOpenError(ConflictError):
    code = "invoice_already_open"


class ForbiddenError(MarketplaceEngineError):
    status_code = 403
    code = "forbidden"


class ActorMismatchError(ForbiddenError):
    code = "actor_mismatch"


class PublishingBlockedError(ForbiddenError):
    """
    Raised when a vendor fails the compliance gate.
    Not retryable until an admin or the vendor completes the missing steps.
    """

    code = "publishing_blocked"

    def __init__(self, vendor_id: str, missing: list[str]):
        self.vendor_id = vendor_id
        self.missing = list(missing)
        super().__init__(
            f"Vendor {vendor_id} is blocked from publishing; "
            f"missing: {', '.join(self.missing)}"
        )


class VendorNotCompliantError(PublishingBlockedError):
    """Raised when a non-compliant vendor responds to a request."""

    code = "vendor_not_compliant"


class ValidationFailedError(MarketplaceEngineError):
    status_code = 400
    code = "validation_failed"


class WebhookSignatureError(ValidationFailedError):
    code = "invalid_webhook_signature"


class UnavailableError(MarketplaceEngineError):
    """An external collaborator failed or timed out. Safe to retry."""

    status_code = 503
    code = "unavailable"
