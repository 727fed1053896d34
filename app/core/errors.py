"""Domain errors raised by the fulfillment services.

Services raise these; ``main.py`` turns them into HTTP responses. A QC hold is
not an error and never appears here.
"""

from __future__ import annotations


class FulfillmentError(ValueError):
    status_code = 400

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class NotFound(FulfillmentError):
    status_code = 404


class ReferenceNotFound(FulfillmentError):
    """A master-data reference (material in a BOM, named vendor) does not resolve."""
    status_code = 422


class ValidationFailed(FulfillmentError):
    status_code = 400


class OverCommit(FulfillmentError):
    status_code = 409


class InsufficientStock(FulfillmentError):
    status_code = 409

    def __init__(self, item_code: str, requested, available):
        super().__init__(
            f"Insufficient stock for {item_code}: requested {requested}, available {available}",
            item_code=item_code,
            requested=str(requested),
            available=str(available),
        )


class InvalidTransition(FulfillmentError):
    status_code = 409


class PhysicalReceiptRequired(FulfillmentError):
    status_code = 409


class LedgerInvariantError(FulfillmentError):
    status_code = 500


class Forbidden(FulfillmentError):
    status_code = 403
