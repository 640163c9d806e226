"""
Disclosure Codec
================

Chia sẻ có chọn lọc: holder chọn các trường muốn tiết lộ, kèm theo hash.

Wire format (the ``data`` query parameter of a verification URL):

    base64url_nopad( canonical JSON )                  plain
    base64url_nopad( RSA-PKCS1v1.5(canonical JSON) )   encrypted

Plain JSON is an object whose keys are the disclosed field names plus the
mandatory ``hash`` key. Ciphertext carries no metadata, so decoding tries
plain JSON first and otherwise hands back an envelope that waits for the
verifier's private key.
"""

import base64
import binascii
import json
import re
from typing import Any, Dict, Iterable, Optional, Union
from dataclasses import dataclass, field
from urllib.parse import parse_qs, quote, unquote, urlparse

from cryptography.hazmat.primitives.asymmetric import padding

import structlog

from .documents import FIELD_LABELS, DocumentKind, DocumentRecord, display_value, infer_kind
from .exceptions import DecodeError, DecryptionError, PayloadTooLarge, ValidationError
from .key_manager import load_private_key, load_public_key, max_plaintext_size


logger = structlog.get_logger(__name__)

HASH_KEY = "hash"
DEFAULT_VERIFY_URL = "https://myvault-verify.vercel.app/verify"
# 1024-bit keys are the smallest we accept, anything shorter cannot be ciphertext
MIN_CIPHERTEXT_BYTES = 128

_B64URL = re.compile(r"^[A-Za-z0-9_-]*$")
_HEX64 = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


@dataclass
class DecodedPayload:
    """Disclosed fields plus fingerprint, ready for display and verification"""
    fields: Dict[str, Any]
    fingerprint: str
    was_encrypted: bool = False

    @property
    def kind(self) -> DocumentKind:
        return infer_kind(self.fields.keys())

    def labelled(self) -> Dict[str, Any]:
        """Fields keyed by human label, unknown keys kept as-is"""
        return {FIELD_LABELS.get(k, k): v for k, v in self.fields.items()}

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.fields)
        data[HASH_KEY] = self.fingerprint
        return data


@dataclass
class EncryptedEnvelope:
    """Ciphertext awaiting a private key"""
    ciphertext: bytes = field(repr=False)

    def __len__(self) -> int:
        return len(self.ciphertext)


@dataclass(frozen=True)
class VerificationRequestDescriptor:
    """
    Generated once by a verifier, scanned by the holder to pick an
    encryption recipient. Immutable once issued.
    """
    verifier_name: str
    document_kind: DocumentKind
    description: str
    verifier_public_key: str

    def __post_init__(self):
        if not self.verifier_name.strip():
            raise ValidationError("Verifier name is required")
        load_public_key(self.verifier_public_key)

    def to_dict(self) -> Dict[str, str]:
        return {
            "verifier": self.verifier_name,
            "documentType": self.document_kind.value,
            "description": self.description,
            "publicKey": self.verifier_public_key,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, text: str) -> "VerificationRequestDescriptor":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Verification request is not JSON: {e}") from None
        if not isinstance(data, dict):
            raise ValidationError("Verification request must be a JSON object")
        missing = [k for k in ("verifier", "documentType", "publicKey") if not data.get(k)]
        if missing:
            raise ValidationError(f"Verification request missing: {', '.join(missing)}")
        return cls(
            verifier_name=data["verifier"],
            document_kind=DocumentKind.parse(data["documentType"]),
            description=data.get("description", ""),
            verifier_public_key=data["publicKey"],
        )


# ==================== BASE64URL ====================

def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(text: str) -> bytes:
    """
    Strict base64url decode, padding optional

    Raises:
        DecodeError: characters outside the url-safe alphabet or bad length
    """
    text = text.strip().rstrip("=")
    if not _B64URL.match(text):
        raise DecodeError("Invalid data (bad encoding)")
    try:
        return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))
    except (binascii.Error, ValueError):
        raise DecodeError("Invalid data (bad encoding)") from None


# ==================== ENCODE ====================

def build_disclosure(record: DocumentRecord, selected_keys: Iterable[str]) -> Dict[str, Any]:
    """
    Mapping of the selected fields plus the mandatory hash

    Raises:
        ValidationError: a selected key is not a field of the record's kind
    """
    schema = record.kind.schema
    data: Dict[str, Any] = {}
    for key in selected_keys:
        if key == HASH_KEY:
            continue
        if schema.field(key) is None:
            raise ValidationError(f"Field {key!r} is not part of {schema.title}")
        data[key] = display_value(record.fields.get(key))
    data[HASH_KEY] = record.fingerprint
    return data


def serialize(data: Dict[str, Any]) -> str:
    """Canonical JSON: sorted keys, no whitespace"""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def encrypt_for(plaintext: bytes, recipient_public_key: str) -> bytes:
    """
    RSA PKCS#1 v1.5 encrypt to the recipient

    Raises:
        PayloadTooLarge: plaintext does not fit in one RSA block
        ValidationError: recipient key unreadable
    """
    public_key = load_public_key(recipient_public_key)
    limit = max_plaintext_size(public_key)
    if len(plaintext) > limit:
        raise PayloadTooLarge(len(plaintext), limit)
    return public_key.encrypt(plaintext, padding.PKCS1v15())


def encode(
    record: DocumentRecord,
    selected_keys: Iterable[str],
    recipient: Optional[str] = None
) -> str:
    """
    Encode a selective disclosure for transport

    Args:
        record: Holder's document
        selected_keys: Field names the holder chose to disclose
        recipient: Verifier public key (PEM); encrypts when given

    Returns:
        URL-safe base64 without padding
    """
    data = build_disclosure(record, selected_keys)
    plaintext = serialize(data).encode("utf-8")

    if recipient:
        payload = encrypt_for(plaintext, recipient)
    else:
        payload = plaintext

    logger.debug(
        "disclosure_encoded",
        kind=record.kind.value,
        fields=sorted(k for k in data if k != HASH_KEY),
        encrypted=bool(recipient),
    )
    return b64url_encode(payload)


# ==================== DECODE ====================

def _parse_plain(text: str) -> Dict[str, Any]:
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("payload is not a JSON object")
    fingerprint = data.get(HASH_KEY)
    if not isinstance(fingerprint, str) or not _HEX64.match(fingerprint):
        raise ValueError("payload has no valid hash")
    return data


def _to_payload(data: Dict[str, Any], was_encrypted: bool) -> DecodedPayload:
    fields = {k: v for k, v in data.items() if k != HASH_KEY}
    return DecodedPayload(fields=fields, fingerprint=data[HASH_KEY], was_encrypted=was_encrypted)


def decode(encoded: str) -> Union[DecodedPayload, EncryptedEnvelope]:
    """
    Decode a transport string

    Returns:
        DecodedPayload for plain JSON, EncryptedEnvelope for ciphertext

    Raises:
        DecodeError: empty, not base64url, malformed JSON object, or too
            short to be RSA ciphertext
    """
    if not encoded or not encoded.strip():
        raise DecodeError("No data in QR code")

    raw = b64url_decode(encoded)

    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        text = None

    if text is not None:
        try:
            return _to_payload(_parse_plain(text), was_encrypted=False)
        except ValueError as e:
            if text.lstrip().startswith("{"):
                raise DecodeError(f"Malformed payload: {e}") from None

    if len(raw) < MIN_CIPHERTEXT_BYTES:
        raise DecodeError("Data is neither a plain payload nor ciphertext")

    return EncryptedEnvelope(ciphertext=raw)


def decrypt_with(envelope: EncryptedEnvelope, private_key_pem: str) -> DecodedPayload:
    """
    Decrypt an envelope with the verifier's private key

    Raises:
        DecryptionError: wrong or unreadable key, or the plaintext is not a
            disclosure payload. Neither key nor plaintext is logged.
    """
    private_key = load_private_key(private_key_pem)
    try:
        plaintext = private_key.decrypt(envelope.ciphertext, padding.PKCS1v15())
        data = _parse_plain(plaintext.decode("utf-8"))
    except ValueError:
        # UnicodeDecodeError and JSONDecodeError are ValueErrors too
        logger.info("disclosure_decryption_failed", ciphertext_bytes=len(envelope))
        raise DecryptionError("Wrong private key, try again") from None

    return _to_payload(data, was_encrypted=True)


# ==================== VERIFICATION URL ====================

def build_verification_url(payload: str, base_url: str = DEFAULT_VERIFY_URL) -> str:
    return f"{base_url}?data={quote(payload, safe='')}"


def extract_payload(text: str) -> str:
    """Accept a full verification URL or the bare payload; return the payload"""
    text = (text or "").strip()
    if "://" in text or text.startswith("/") or "?data=" in text:
        values = parse_qs(urlparse(text).query).get("data")
        if not values:
            raise DecodeError("No data in QR code")
        return values[0]
    return unquote(text)
