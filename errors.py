# errors.py
"""Error taxonomy shared by the payment engine, assignment service and rental flow.

Every error carries a stable ``kind`` (what the UI switches on), an HTTP
status for the API layer and a message that is safe to show to a user.
"""

from typing import Optional


class RentalError(Exception):
    kind = "RentalError"
    status_code = 400
    default_message = "Something went wrong"

    def __init__(self, message: Optional[str] = None, **context):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.message}


class ConnectionRequired(RentalError):
    kind = "ConnectionRequired"
    status_code = 401
    default_message = "Please connect a wallet to proceed"


# The payment engine speaks of a missing wallet, the rental flow of a missing
# connection; they are the same condition.
NoWalletConnected = ConnectionRequired


class InvalidNodeState(RentalError):
    kind = "InvalidNodeState"
    status_code = 409
    default_message = "Node is not available for this action"


class InvalidPrice(RentalError):
    kind = "InvalidPrice"
    status_code = 400
    default_message = "Node price must be a positive amount"


class NoTokenAccount(RentalError):
    kind = "NoTokenAccount"
    status_code = 400
    default_message = "Your wallet has never held the payment token"


class InsufficientFunds(RentalError):
    kind = "InsufficientFunds"
    status_code = 402
    default_message = "Insufficient token balance for this deploy"


class TransactionExpired(RentalError):
    kind = "TransactionExpired"
    status_code = 504
    default_message = (
        "The transaction was not confirmed in time. It may still land; "
        "check your wallet before trying again"
    )


class UserRejected(RentalError):
    kind = "UserRejected"
    status_code = 400
    default_message = "Transaction signing was declined"


class SubmissionFailed(RentalError):
    kind = "SubmissionFailed"
    status_code = 502
    default_message = "Transaction submission failed"


class AssignmentRejected(RentalError):
    kind = "AssignmentRejected"
    status_code = 409
    default_message = "Payment succeeded but the node could not be assigned"


class UpstreamUnavailable(RentalError):
    kind = "UpstreamUnavailable"
    status_code = 503
    default_message = "Upstream service is unavailable"


class NoSlotAvailable(RentalError):
    kind = "NoSlotAvailable"
    status_code = 409
    default_message = "No available node slot. All miners are currently registered."


class NotFound(RentalError):
    kind = "NotFound"
    status_code = 404
    default_message = "Not found"


def status_for(kind: str) -> int:
    """HTTP status for an error kind (used when an outcome, not an exception, carries it)."""
    for cls in RentalError.__subclasses__():
        if cls.kind == kind:
            return cls.status_code
    return RentalError.status_code
