"""
Hash Registry Client
====================

Service-side gate in front of the ledger:

1. check the writer is an authority (writes only)
2. validate and normalize hex input
3. serialize writes per identity commitment, holding the identity until the
   ledger call has returned even when the caller stopped waiting
4. run the blocking ledger call off the event loop with a timeout,
   retrying transient read/connect failures with exponential backoff

Validation and authorization failures never reach the ledger and are never
retried. A write that times out is reported as "not confirmed" and not
resubmitted.
"""

import asyncio
import functools
import re
import weakref
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Optional

import structlog

from .auth import Principal, require_authority
from .exceptions import ChainError, ValidationError
from .ledger import HashLedger, TransactionReceipt


logger = structlog.get_logger(__name__)

_HEX64 = re.compile(r"^[0-9a-f]{64}$")


def normalize_hex(value: Any, name: str = "hash") -> str:
    """
    Canonical registry form: "0x" + 64 lowercase hex chars

    Accepts the value with or without "0x", surrounding whitespace ignored.

    Raises:
        ValidationError: not a string, wrong length, or non-hex characters
    """
    if not isinstance(value, str):
        raise ValidationError(f"Invalid {name}: expected hex string")
    text = value.strip().lower()
    if text.startswith("0x"):
        text = text[2:]
    if not _HEX64.match(text):
        raise ValidationError(f"Invalid {name}: must be 64 hex characters (32 bytes)")
    return "0x" + text


class HashRegistryClient:
    """
    storeInitial / update / verify against a HashLedger

    Args:
        ledger: Blocking ledger adapter
        timeout: Seconds allowed for each ledger call
        max_retries: Retries of transient errors (reads and pre-broadcast)
        backoff: Base delay, doubled after every retry
    """

    def __init__(
        self,
        ledger: HashLedger,
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.ledger = ledger
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff = backoff
        self._sleep = sleep
        self._write_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    # ==================== WRITES ====================

    async def store_initial(
        self,
        principal: Optional[Principal],
        identity_id: str,
        hash_hex: str
    ) -> TransactionReceipt:
        """
        First issuance for an identity

        Raises:
            AuthorizationError: principal is not an authority
            ValidationError: malformed identity id or hash
            DuplicateError: identity already has an entry
            ChainError: ledger failure, nothing stored
        """
        require_authority(principal)
        identity_id = normalize_hex(identity_id, "identityId")
        hash_hex = normalize_hex(hash_hex, "hash")

        async with self._write_slot(identity_id) as slot:
            receipt = await self._call(
                "store_initial", self.ledger.store_initial, identity_id, hash_hex, slot=slot
            )

        logger.info(
            "hash_stored",
            identity_id=identity_id,
            hash=hash_hex,
            authority=principal.subject,
            **receipt.to_dict(),
        )
        return receipt

    async def update(
        self,
        principal: Optional[Principal],
        identity_id: str,
        new_hash_hex: str
    ) -> TransactionReceipt:
        """
        Revoke the current hash and install a new one

        After success verify(identity, new) is True and verify(identity, old)
        is False.
        """
        require_authority(principal)
        identity_id = normalize_hex(identity_id, "identityId")
        new_hash_hex = normalize_hex(new_hash_hex, "newHash")

        async with self._write_slot(identity_id) as slot:
            receipt = await self._call(
                "update", self.ledger.update, identity_id, new_hash_hex, slot=slot
            )

        logger.info(
            "hash_updated",
            identity_id=identity_id,
            hash=new_hash_hex,
            authority=principal.subject,
            **receipt.to_dict(),
        )
        return receipt

    # ==================== READS ====================

    async def verify(self, identity_id: str, hash_hex: str) -> bool:
        """True iff hash is the identity's current hash. No auth, no locking."""
        identity_id = normalize_hex(identity_id, "identityId")
        hash_hex = normalize_hex(hash_hex, "hash")
        valid = await self._call("verify", self.ledger.verify, identity_id, hash_hex)
        logger.debug("hash_verified", identity_id=identity_id, valid=valid)
        return bool(valid)

    # ==================== INTERNALS ====================

    def _lock_for(self, identity_id: str) -> asyncio.Lock:
        lock = self._write_locks.get(identity_id)
        if lock is None:
            lock = asyncio.Lock()
            self._write_locks[identity_id] = lock
        return lock

    @asynccontextmanager
    async def _write_slot(self, identity_id: str):
        """
        Exclusive write access to one identity

        Released on exit, or once the last ledger call returns if the
        caller gave up on it first (timeout, cancellation).
        """
        lock = self._lock_for(identity_id)
        await lock.acquire()
        slot = _WriteSlot()
        try:
            yield slot
        finally:
            if slot.pending is None or slot.pending.done():
                lock.release()
            else:
                slot.pending.add_done_callback(
                    functools.partial(self._abandoned_write_done, identity_id, lock)
                )

    @staticmethod
    def _abandoned_write_done(identity_id: str, lock: asyncio.Lock, work: asyncio.Future):
        lock.release()
        if work.cancelled():
            return
        error = work.exception()
        logger.warning(
            "abandoned_write_finished",
            identity_id=identity_id,
            landed=error is None,
            reason=None if error is None else str(error),
        )

    async def _call(self, op: str, fn: Callable, *args, slot: Optional["_WriteSlot"] = None):
        attempt = 0
        while True:
            try:
                if slot is None:
                    return await asyncio.wait_for(asyncio.to_thread(fn, *args), self.timeout)
                slot.pending = asyncio.ensure_future(asyncio.to_thread(fn, *args))
                return await asyncio.wait_for(asyncio.shield(slot.pending), self.timeout)
            except asyncio.TimeoutError:
                if slot is not None:
                    raise ChainError(f"Transaction not confirmed within {self.timeout:g}s") from None
                error = ChainError(f"Ledger call timed out after {self.timeout:g}s", transient=True)
            except ChainError as e:
                error = e
            except OSError as e:
                error = ChainError(f"Ledger node unreachable: {e}", transient=True, cause=e)

            if not error.transient or attempt >= self.max_retries:
                logger.warning("ledger_call_failed", op=op, attempts=attempt + 1, reason=error.reason)
                raise error

            delay = self.backoff * (2 ** attempt)
            attempt += 1
            logger.info("ledger_retry", op=op, attempt=attempt, delay=delay, reason=error.reason)
            await self._sleep(delay)


class _WriteSlot:
    """Holds the in-flight ledger call of a write"""

    def __init__(self):
        self.pending: Optional[asyncio.Future] = None
