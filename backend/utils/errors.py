class FulfillmentError(Exception):
    status_code = 400
    code = "FULFILLMENT_ERROR"

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {"detail": self.message, "error": self.code, **self.context}


class InvalidTransition(FulfillmentError):
    """Command does not apply to the entity's current state."""

    status_code = 409
    code = "INVALID_TRANSITION"


class ValidationError(FulfillmentError):
    """Required command field missing or malformed."""

    status_code = 400
    code = "VALIDATION_ERROR"


class PolicyViolation(FulfillmentError):
    """Business rule rejection, permanent for this request."""

    status_code = 422
    code = "POLICY_VIOLATION"


class ConcurrencyConflict(FulfillmentError):
    status_code = 409
    code = "CONCURRENCY_CONFLICT"


class ExternalCapabilityFailure(FulfillmentError):
    status_code = 502
    code = "EXTERNAL_CAPABILITY_FAILURE"


class EntityNotFound(FulfillmentError):
    status_code = 404
    code = "NOT_FOUND"
