"""
Canonical Hasher and Identity Commitment

Two separate digests for two separate key spaces:

- Fingerprint: SHA-256 over "v1|v2|...|vn" of a kind's canonical form,
  lowercase hex without prefix.
- Identity commitment: keccak-256 over the normalized natural identifier,
  "0x"-prefixed lowercase hex (the registry's bytes32 key).

Issuer and verifier both call ``commit_identity``; nothing else may
compute a commitment.
"""

import hashlib
from typing import Any, Sequence

from eth_utils import keccak

from .documents import MISSING, SEPARATOR, DocumentKind, normalize_identifier
from .exceptions import ValidationError


def compute_fingerprint(kind: DocumentKind, canonical_values: Sequence[Any]) -> str:
    """
    Hash a canonical form

    Pure and total: short input is padded with the "-" sentinel, values past
    the kind's canonical field count are ignored, empty values become "-".

    Args:
        kind: Document kind (fixes the number of canonical positions)
        canonical_values: Normalized values in canonical order

    Returns:
        64-char lowercase hex SHA-256 digest
    """
    width = len(kind.schema.canonical_fields)
    values = [str(v) if v not in (None, "") else MISSING for v in list(canonical_values)[:width]]
    values.extend([MISSING] * (width - len(values)))

    data_string = SEPARATOR.join(values)
    return hashlib.sha256(data_string.encode("utf-8")).hexdigest()


def commit_identity(natural_id: str) -> str:
    """
    Derive the registry key for a natural identifier (e.g. NIC number)

    Args:
        natural_id: Raw identifier; whitespace is removed and case folded up

    Returns:
        "0x" + 64 lowercase hex chars

    Raises:
        ValidationError: identifier is blank
    """
    normalized = normalize_identifier(natural_id)
    if not normalized or normalized == MISSING:
        raise ValidationError("Identifier is empty")
    return "0x" + keccak(text=normalized).hex()
