"""
Error taxonomy for the document integrity protocol.

ValidationError and AuthorizationError are raised before any ledger call.
ChainError carries a ``transient`` flag; only transient chain errors are retried.
"""

from typing import Optional


class IntegrityError(Exception):
    """Base exception for all protocol errors"""
    pass


class ValidationError(IntegrityError):
    """Malformed hash, identifier or request shape. Never transient."""
    pass


class AuthorizationError(IntegrityError):
    """Writer lacks the authority role"""
    pass


class AuthenticationError(AuthorizationError):
    """Bearer token missing, expired or not signed by us"""
    pass


class DuplicateError(IntegrityError):
    """storeInitial on an identity commitment that already has an entry"""
    pass


class ChainError(IntegrityError):
    """Ledger node unreachable, call timed out or transaction reverted"""

    def __init__(self, reason: str, transient: bool = False, cause: Optional[BaseException] = None):
        super().__init__(reason)
        self.reason = reason
        self.transient = transient
        self.cause = cause


class DecodeError(IntegrityError):
    """Payload is neither plain JSON nor plausible ciphertext"""
    pass


class DecryptionError(IntegrityError):
    """Well-formed ciphertext but wrong or invalid private key"""
    pass


class PayloadTooLarge(IntegrityError):
    """Serialized disclosure exceeds what the recipient key can encrypt"""

    def __init__(self, size: int, limit: int):
        super().__init__(
            f"Disclosure is {size} bytes, recipient key can encrypt at most {limit} bytes; "
            f"disclose fewer fields"
        )
        self.size = size
        self.limit = limit
