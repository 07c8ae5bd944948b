"""Domain errors raised by the billing schedule engine.

Each error carries an ``http_status`` hint so an API layer can map it to a
response code without inspecting the message.
"""


class BillingError(Exception):
    """Base class for all billing engine errors."""

    http_status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(BillingError):
    """A schedule, invoice or related record does not exist."""

    http_status = 404


class ScheduleNotFoundError(NotFoundError):
    def __init__(self, schedule_id):
        super().__init__(f"Scheduled billing {schedule_id} not found")
        self.schedule_id = schedule_id


class InvalidStateError(BillingError):
    """A state transition was requested from a state that does not allow it."""

    http_status = 409


class ValidationError(BillingError):
    """Malformed schedule input (amounts, day of month, custom interval)."""

    http_status = 422


class ConsistencyError(BillingError):
    """Assembled line items do not add up to the stated service fee."""

    http_status = 422


class DuplicateRunError(BillingError):
    """A SUCCESS run already exists for the period being generated."""

    http_status = 409


class PersistenceError(BillingError):
    """The record store failed while reading or writing."""

    http_status = 500


class RunTimeoutError(BillingError, TimeoutError):
    """A single schedule run exceeded the batch's per-item bound."""

    http_status = 504
