"""
Error taxonomy of the circulation engine.

Every failed operation raises one of these after its unit of work has been
rolled back, so callers always see the store exactly as it was before the
call. The HTTP layer maps them to JSON responses via ``http_status``.
"""


class CirculationError(Exception):
    code = "circulation_error"
    http_status = 500

    def __init__(self, message):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"error": self.code, "message": self.message}


class NotFound(CirculationError):
    code = "not_found"
    http_status = 404

    def __init__(self, entity, entity_id):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class PreconditionViolation(CirculationError):
    """The entity is not in the state the operation requires."""

    code = "precondition_violation"
    http_status = 409

    def __init__(self, message, status=None):
        super().__init__(message)
        self.status = status

    def to_dict(self):
        data = super().to_dict()
        if self.status is not None:
            data["status"] = self.status
        return data


class AlreadyReturned(CirculationError):
    code = "already_returned"
    http_status = 409

    def __init__(self, loan_id):
        super().__init__(f"Loan {loan_id} has already been returned")
        self.loan_id = loan_id


class ConstraintViolation(CirculationError):
    code = "constraint_violation"
    http_status = 400


class Unavailable(CirculationError):
    """The store stayed contended after all retries."""

    code = "unavailable"
    http_status = 503
