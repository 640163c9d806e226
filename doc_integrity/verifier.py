"""
Verifier State Machine
======================

Xác thực tài liệu phía verifier: decode → (decrypt) → registry verify → verdict.

    LOADING ──► DECODE_ERROR                  (terminal, re-scan)
       │
       ├──► PLAIN ──────────────┐
       └──► ENCRYPTED ─► DECRYPTED ─┤
               ▲   │              ▼
               └─ DECRYPTION_ERROR   VERIFYING ─► VERIFIED | UNVERIFIED | VERIFICATION_ERROR

A payload triggers at most one registry call per session, however often
``verify`` is awaited. Decoded data stays available in every later state:
a registry failure leaves it displayed as unverified, never hidden.
"""

import asyncio
from typing import Any, Dict, Optional, Protocol
from dataclasses import dataclass
from enum import Enum

import structlog

from .disclosure import DecodedPayload, EncryptedEnvelope, decode, decrypt_with, extract_payload
from .documents import MISSING, utc_now
from .exceptions import DecodeError, DecryptionError, IntegrityError
from .hashing import commit_identity


logger = structlog.get_logger(__name__)


class SessionState(Enum):
    """Verification session states"""
    LOADING = "loading"
    DECODE_ERROR = "decode_error"
    PLAIN = "plain"
    ENCRYPTED = "encrypted"
    DECRYPTED = "decrypted"
    DECRYPTION_ERROR = "decryption_error"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    UNVERIFIED = "unverified"
    VERIFICATION_ERROR = "verification_error"


TRANSITIONS = {
    SessionState.LOADING: {SessionState.DECODE_ERROR, SessionState.PLAIN, SessionState.ENCRYPTED},
    SessionState.ENCRYPTED: {SessionState.DECRYPTED, SessionState.DECRYPTION_ERROR},
    SessionState.DECRYPTION_ERROR: {SessionState.DECRYPTED, SessionState.DECRYPTION_ERROR},
    SessionState.PLAIN: {SessionState.VERIFYING},
    SessionState.DECRYPTED: {SessionState.VERIFYING},
    SessionState.VERIFYING: {
        SessionState.VERIFIED,
        SessionState.UNVERIFIED,
        SessionState.VERIFICATION_ERROR,
    },
}

READY_STATES = (SessionState.PLAIN, SessionState.DECRYPTED)
FINAL_STATES = (
    SessionState.DECODE_ERROR,
    SessionState.VERIFIED,
    SessionState.UNVERIFIED,
    SessionState.VERIFICATION_ERROR,
)


class RegistryReader(Protocol):
    """Anything that can answer verify(identityId, hash)"""

    async def verify(self, identity_id: str, hash_hex: str) -> bool:
        ...


@dataclass
class VerificationResult:
    """Snapshot of a session for display"""
    state: SessionState
    fields: Dict[str, Any]
    fingerprint: str
    identity_id: str
    is_valid: Optional[bool]
    was_encrypted: bool
    error: Optional[str]
    checked_at: str

    @property
    def trusted(self) -> bool:
        return self.state == SessionState.VERIFIED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "trusted": self.trusted,
            "isValid": self.is_valid,
            "fields": self.fields,
            "hash": self.fingerprint,
            "identityId": self.identity_id,
            "encrypted": self.was_encrypted,
            "error": self.error,
            "checkedAt": self.checked_at,
        }


class VerificationSession:
    """
    One verification of one scanned payload

    Usage:
        session = VerificationSession(registry)
        session.load(scanned_url)
        if session.state == SessionState.ENCRYPTED:
            session.submit_key(private_key_pem)
        result = await session.verify()
    """

    def __init__(self, registry: RegistryReader):
        self.registry = registry
        self.state = SessionState.LOADING
        self.payload: Optional[DecodedPayload] = None
        self.envelope: Optional[EncryptedEnvelope] = None
        self.identity_id = ""
        self.is_valid: Optional[bool] = None
        self.error: Optional[str] = None
        self._verify_task: Optional[asyncio.Task] = None
        self._cancelled = False

    # ==================== TRANSITIONS ====================

    def _transition(self, new_state: SessionState):
        allowed = TRANSITIONS.get(self.state, set())
        if new_state not in allowed:
            raise RuntimeError(f"Illegal transition {self.state.value} -> {new_state.value}")
        logger.debug("session_transition", old=self.state.value, new=new_state.value)
        self.state = new_state

    def load(self, transport: str) -> SessionState:
        """
        Decode a scanned verification URL (or bare payload)

        Returns:
            PLAIN, ENCRYPTED or DECODE_ERROR
        """
        if self.state != SessionState.LOADING:
            raise RuntimeError("Session already loaded; start a new session to re-scan")
        try:
            decoded = decode(extract_payload(transport))
        except DecodeError as e:
            self.error = str(e)
            self._transition(SessionState.DECODE_ERROR)
            return self.state

        if isinstance(decoded, EncryptedEnvelope):
            self.envelope = decoded
            self._transition(SessionState.ENCRYPTED)
        else:
            self.payload = decoded
            self._transition(SessionState.PLAIN)
        return self.state

    def submit_key(self, private_key_pem: str) -> SessionState:
        """
        Try a private key on an encrypted payload. Retryable after a wrong key.

        Returns:
            DECRYPTED or DECRYPTION_ERROR
        """
        if self.state not in (SessionState.ENCRYPTED, SessionState.DECRYPTION_ERROR):
            raise RuntimeError(f"No encrypted payload awaiting a key (state: {self.state.value})")
        try:
            self.payload = decrypt_with(self.envelope, private_key_pem)
        except DecryptionError as e:
            self.error = str(e)
            self._transition(SessionState.DECRYPTION_ERROR)
            return self.state

        self.error = None
        self.envelope = None
        self._transition(SessionState.DECRYPTED)
        return self.state

    # ==================== REGISTRY CHECK ====================

    def start_verification(self) -> Optional[asyncio.Task]:
        """
        Start the registry check once. Later calls return the same task;
        None while the payload is not yet readable.
        """
        if self._verify_task is None and self.state in READY_STATES and not self._cancelled:
            self._verify_task = asyncio.ensure_future(self._run_verification())
        return self._verify_task

    async def verify(self) -> VerificationResult:
        """Run (or join) the single registry check and return the snapshot"""
        task = self.start_verification()
        if task is not None:
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                if not self._cancelled:
                    raise
        return self.result()

    def cancel(self):
        """Abandon the session; an in-flight check no longer changes state"""
        self._cancelled = True
        if self._verify_task is not None and not self._verify_task.done():
            self._verify_task.cancel()

    async def _run_verification(self):
        self._transition(SessionState.VERIFYING)
        payload = self.payload
        kind = payload.kind
        id_field = kind.schema.identity_field
        natural_id = payload.fields.get(id_field)

        if not natural_id or natural_id == MISSING:
            self._finish(
                SessionState.VERIFICATION_ERROR,
                error=f"{kind.schema.field(id_field).label} was not disclosed; registry cannot be checked",
            )
            return

        try:
            self.identity_id = commit_identity(str(natural_id))
            valid = await self.registry.verify(self.identity_id, payload.fingerprint)
        except IntegrityError as e:
            if self._cancelled:
                return
            logger.warning("verification_failed", identity_id=self.identity_id, reason=str(e))
            self._finish(SessionState.VERIFICATION_ERROR, error=f"Unable to confirm: {e}")
            return

        if self._cancelled:
            return
        self.is_valid = bool(valid)
        self._finish(SessionState.VERIFIED if valid else SessionState.UNVERIFIED)

    def _finish(self, state: SessionState, error: Optional[str] = None):
        self.error = error
        self._transition(state)
        logger.info(
            "verification_completed",
            state=state.value,
            identity_id=self.identity_id,
            encrypted=self.payload.was_encrypted,
        )

    # ==================== SNAPSHOT ====================

    @property
    def done(self) -> bool:
        return self.state in FINAL_STATES

    def result(self) -> VerificationResult:
        payload = self.payload
        return VerificationResult(
            state=self.state,
            fields=payload.labelled() if payload else {},
            fingerprint=payload.fingerprint if payload else "",
            identity_id=self.identity_id,
            is_valid=self.is_valid,
            was_encrypted=payload.was_encrypted if payload else self.envelope is not None,
            error=self.error,
            checked_at=utc_now(),
        )
