"""Exceptions raised by the payment verification engine."""


class PaymentVerificationError(Exception):
    """Base class for every engine error."""


class ValidationError(PaymentVerificationError):
    """Malformed submission field (hash, address, amount, chain)."""


class ChainUnavailable(PaymentVerificationError):
    """Transient RPC/network failure after retries were exhausted.

    The payment is routed to manual review, never rejected, when this is raised.
    """

    def __init__(self, chain: str, message: str):
        super().__init__(f"{chain}: {message}")
        self.chain = chain


class ChainMismatch(PaymentVerificationError):
    """Definitive contradiction between submitted data and on-chain data."""

    def __init__(self, check: str, message: str):
        super().__init__(message)
        self.check = check


class DuplicateTransaction(ChainMismatch):
    """Transaction hash already attributed to another payment."""

    def __init__(self, tx_hash: str, existing_payment_id: str):
        super().__init__("no_duplicates",
                         f"Transaction hash already used by payment {existing_payment_id}")
        self.tx_hash = tx_hash
        self.existing_payment_id = existing_payment_id


class ConcurrentModification(PaymentVerificationError):
    """Conditional store write lost the race against another writer."""

    def __init__(self, payment_id: str, expected_status):
        super().__init__(f"Payment {payment_id} changed concurrently (expected status {expected_status})")
        self.payment_id = payment_id
        self.expected_status = expected_status


class ExpiredPayment(PaymentVerificationError):
    """Operation attempted on a payment whose review window has closed."""

    def __init__(self, payment_id: str):
        super().__init__(f"Payment {payment_id} has expired")
        self.payment_id = payment_id


class PaymentNotFound(PaymentVerificationError):
    def __init__(self, payment_id: str):
        super().__init__(f"Payment {payment_id} not found")
        self.payment_id = payment_id


class InvalidTransition(PaymentVerificationError):
    """Requested status change is not allowed from the current status."""

    def __init__(self, payment_id: str, current_status, requested_status):
        super().__init__(
            f"Payment {payment_id} cannot move from {getattr(current_status, 'value', current_status)} "
            f"to {getattr(requested_status, 'value', requested_status)}"
        )
        self.payment_id = payment_id
        self.current_status = current_status
        self.requested_status = requested_status
