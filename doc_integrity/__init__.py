"""
Document Integrity & Selective Disclosure
=========================================

Chứng minh giấy tờ là thật và chưa bị sửa đổi, không cần kết nối tới bên cấp.

Components:
- documents / hashing: dạng chuẩn và fingerprint của giấy tờ
- disclosure: mã hóa / giải mã payload chia sẻ có chọn lọc
- HashRegistryClient: storeInitial / update / verify trên ledger
- VerificationSession: máy trạng thái phía verifier
- VaultService: service tích hợp chính
"""

from .exceptions import (
    IntegrityError,
    ValidationError,
    AuthorizationError,
    AuthenticationError,
    DuplicateError,
    ChainError,
    DecodeError,
    DecryptionError,
    PayloadTooLarge,
)
from .documents import DocumentKind, DocumentRecord, FieldSpec, infer_kind
from .hashing import compute_fingerprint, commit_identity
from .key_manager import KeyManager, KeyPair
from .disclosure import (
    DecodedPayload,
    EncryptedEnvelope,
    VerificationRequestDescriptor,
    encode,
    decode,
    decrypt_with,
)
from .ledger import InMemoryLedger, Web3Ledger, TransactionReceipt
from .registry_client import HashRegistryClient
from .verifier import VerificationSession, VerificationResult, SessionState
from .vault_service import VaultService

__version__ = "1.0.0"
__all__ = [
    # Errors
    "IntegrityError",
    "ValidationError",
    "AuthorizationError",
    "AuthenticationError",
    "DuplicateError",
    "ChainError",
    "DecodeError",
    "DecryptionError",
    "PayloadTooLarge",

    # Documents
    "DocumentKind",
    "DocumentRecord",
    "FieldSpec",
    "infer_kind",
    "compute_fingerprint",
    "commit_identity",

    # Keys
    "KeyManager",
    "KeyPair",

    # Disclosure
    "DecodedPayload",
    "EncryptedEnvelope",
    "VerificationRequestDescriptor",
    "encode",
    "decode",
    "decrypt_with",

    # Registry
    "InMemoryLedger",
    "Web3Ledger",
    "TransactionReceipt",
    "HashRegistryClient",

    # Verifier
    "VerificationSession",
    "VerificationResult",
    "SessionState",

    # Service
    "VaultService"
]
