"""Domain exceptions for webhook reconciliation and billing operations.

Every error carries a machine-readable ``code`` and a ``message`` that is
safe to show to API callers. Blueprints translate these into JSON responses;
the event router uses the class hierarchy to decide whether an event is
acknowledged, flagged, or rolled back for redelivery.
"""


class BillingError(Exception):
    """Base class for all billing engine errors."""

    code = "billing_error"
    message = "Billing request failed."
    status_code = 400

    def __init__(self, detail=None, **context):
        self.detail = detail or self.message
        self.context = context
        super().__init__(self.detail)

    @property
    def payload(self):
        """Serialized representation suitable for JSON responses."""
        return {"error": self.code, "message": self.message}


# ── Security (terminal, never retried) ──

class SecurityError(BillingError):
    code = "security_error"
    message = "Webhook could not be authenticated."


class SignatureInvalid(SecurityError):
    code = "signature_invalid"
    message = "Invalid signature"


class EventStale(SecurityError):
    code = "event_stale"
    message = "Event timestamp outside tolerance"


# ── Business conflicts (acknowledged, reconciled manually) ──

class ConflictError(BillingError):
    code = "conflict"
    message = "Conflicting billing state."
    status_code = 409


class SlotConflict(ConflictError):
    code = "slot_conflict"
    message = "This slot is already booked."


class DuplicateOrder(ConflictError):
    code = "duplicate_order"
    message = "An order already exists for this checkout session."


# ── Transient (rolled back, gateway redelivers) ──

class TransientError(BillingError):
    code = "transient_error"
    message = "Temporary failure, please retry."
    status_code = 503


class HandlerTimeout(TransientError):
    code = "handler_timeout"


# ── Validation (acknowledged, flagged for review) ──

class EventValidationError(BillingError):
    code = "invalid_event"
    message = "Malformed event payload."
    status_code = 422


class InvalidTransition(EventValidationError):
    code = "invalid_transition"
    message = "Status transition not allowed."


# ── User-facing operation failures ──

class ProrationError(BillingError):
    code = "proration_error"
    message = "Unable to calculate plan change."
    status_code = 422


class GatewayError(BillingError):
    code = "gateway_error"
    message = "Payment could not be completed."
    status_code = 502
