"""
Vault Service
=============

Tích hợp các module: holder (record + share), authority (issue / reissue),
verifier (verification request + session).
"""

from typing import Any, Dict, Iterable, Optional, Tuple

import structlog

from .auth import Principal
from .disclosure import DEFAULT_VERIFY_URL, VerificationRequestDescriptor, build_verification_url, encode
from .documents import DocumentKind, DocumentRecord
from .hashing import commit_identity
from .key_manager import KeyManager, KeyPair
from .ledger import TransactionReceipt
from .record_store import InMemoryRecordStore, RecordStore
from .registry_client import HashRegistryClient
from .verifier import VerificationSession


logger = structlog.get_logger(__name__)


class VaultService:
    """
    Main service class tying documents, registry and disclosure together

    Provides a unified interface for:
    - Issuing and re-issuing document fingerprints (authority)
    - Selective disclosure links (holder)
    - Verification requests and sessions (verifier)
    """

    def __init__(
        self,
        registry: HashRegistryClient,
        record_store: Optional[RecordStore] = None,
        key_manager: Optional[KeyManager] = None,
        verify_base_url: str = DEFAULT_VERIFY_URL
    ):
        """
        Args:
            registry: Registry client used for writes and verification
            record_store: Holder-side storage (in-memory when omitted)
            key_manager: Verifier key pairs
            verify_base_url: Base of generated verification URLs
        """
        self.registry = registry
        self.record_store = record_store or InMemoryRecordStore()
        self.key_manager = key_manager or KeyManager()
        self.verify_base_url = verify_base_url

    # ==================== AUTHORITY ====================

    async def issue(self, principal: Principal, record: DocumentRecord) -> Tuple[str, TransactionReceipt]:
        """
        First issuance: register the record's fingerprint under its identity

        Returns:
            Tuple of (identity_id, receipt)
        """
        identity_id = commit_identity(record.identity_value)
        receipt = await self.registry.store_initial(principal, identity_id, record.fingerprint)
        return identity_id, receipt

    async def reissue(self, principal: Principal, record: DocumentRecord) -> Tuple[str, TransactionReceipt]:
        """Replace the registered fingerprint after the record changed; the old one stops verifying"""
        identity_id = commit_identity(record.identity_value)
        receipt = await self.registry.update(principal, identity_id, record.fingerprint)
        return identity_id, receipt

    # ==================== HOLDER ====================

    def save_record(self, kind: Any, raw_fields: Dict[str, Any]) -> DocumentRecord:
        """Create (or overwrite) the holder's record of a kind"""
        record = DocumentRecord.create(kind, raw_fields)
        return self.record_store.set(record.kind.value, record)

    def edit_record(self, kind: Any, changes: Dict[str, Any]) -> DocumentRecord:
        kind = DocumentKind.parse(kind)
        current = self.record_store.get(kind.value)
        if current is None:
            raise KeyError(f"No {kind.schema.title} stored")
        return self.record_store.set(kind.value, current.with_fields(changes))

    def share(
        self,
        record: DocumentRecord,
        selected_keys: Iterable[str],
        recipient: Optional[str] = None
    ) -> str:
        """
        Build the verification URL for a selective disclosure

        Args:
            record: Holder's document
            selected_keys: Fields to disclose (hash is always included)
            recipient: Verifier public key PEM; encrypts when given
        """
        payload = encode(record, selected_keys, recipient)
        return build_verification_url(payload, self.verify_base_url)

    def share_for_request(
        self,
        record: DocumentRecord,
        selected_keys: Iterable[str],
        request: VerificationRequestDescriptor
    ) -> str:
        """Share encrypted to the verifier of a scanned verification request"""
        if request.document_kind != record.kind:
            logger.warning(
                "share_kind_mismatch",
                requested=request.document_kind.value,
                shared=record.kind.value,
            )
        return self.share(record, selected_keys, request.verifier_public_key)

    # ==================== VERIFIER ====================

    def create_verification_request(
        self,
        verifier_name: str,
        document_kind: Any,
        description: str = ""
    ) -> Tuple[VerificationRequestDescriptor, KeyPair]:
        """
        Generate a key pair and the descriptor a holder scans

        Returns:
            Tuple of (descriptor, key_pair); the private key stays with the verifier
        """
        document_kind = DocumentKind.parse(document_kind)
        key_pair = self.key_manager.generate_keypair()
        descriptor = VerificationRequestDescriptor(
            verifier_name=verifier_name.strip(),
            document_kind=document_kind,
            description=description,
            verifier_public_key=key_pair.public_key_pem,
        )
        logger.info(
            "verification_request_created",
            verifier=descriptor.verifier_name,
            kind=descriptor.document_kind.value,
            key_id=key_pair.key_id,
        )
        return descriptor, key_pair

    def open_session(self, transport: str) -> VerificationSession:
        """Start a verifier session on a scanned URL or bare payload"""
        session = VerificationSession(self.registry)
        session.load(transport)
        return session
