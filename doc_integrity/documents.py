"""
Document Model - Các loại giấy tờ và dạng chuẩn (canonical form)

Each document kind carries a fixed, ordered list of canonical fields. Only
those fields, normalized, feed the fingerprint. Other fields may be stored and
disclosed but never change the fingerprint.

Kinds:
- IDENTITY_CARD: national identity card
- DRIVING_LICENSE: driving licence
- EXAM_RESULT: G.C.E. A/L examination result
"""

import re
from typing import Any, Callable, Dict, Iterable, List, Optional, Set
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from .exceptions import ValidationError


MISSING = "-"
SEPARATOR = "|"

_WHITESPACE = re.compile(r"\s+")


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


# ==================== NORMALIZERS ====================

def normalize_identifier(value: Any) -> str:
    """Remove all whitespace and upper-case ("9123 4567 8v" -> "912345678V")"""
    if value is None:
        return ""
    return _WHITESPACE.sub("", str(value)).upper()


def normalize_name(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip().upper()


def normalize_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def normalize_code_list(value: Any) -> List[str]:
    """Vehicle classes and similar: "a, b1 ,C" or ["a", "b1"] -> ["A", "B1", "C"]"""
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = [str(v) for v in value]
    cleaned = [normalize_identifier(item) for item in items]
    return [item for item in cleaned if item]


def normalize_subjects(value: Any) -> List[Dict[str, str]]:
    """Exam subjects: list of {subjectCode, result}, both upper-cased"""
    if not value:
        return []
    subjects = []
    for item in value:
        code = normalize_identifier(item.get("subjectCode", ""))
        result = normalize_identifier(item.get("result", ""))
        if code:
            subjects.append({"subjectCode": code, "result": result})
    return subjects


# ==================== SCHEMAS ====================

@dataclass(frozen=True)
class FieldSpec:
    """One typed field of a document kind"""
    key: str
    label: str
    normalizer: Callable[[Any], Any] = normalize_text
    required: bool = False


@dataclass(frozen=True)
class DocumentSchema:
    """Fixed field list of a document kind plus its canonical (hashed) subset"""
    title: str
    fields: List[FieldSpec]
    canonical_fields: List[str]
    identity_field: str
    canonical_version: int = 1

    def field(self, key: str) -> Optional[FieldSpec]:
        for spec in self.fields:
            if spec.key == key:
                return spec
        return None

    @property
    def keys(self) -> List[str]:
        return [spec.key for spec in self.fields]


class DocumentKind(Enum):
    """Supported document kinds"""
    IDENTITY_CARD = "id_card"
    DRIVING_LICENSE = "driving_license"
    EXAM_RESULT = "a_l_certificate"

    @property
    def schema(self) -> DocumentSchema:
        return DOCUMENT_SCHEMAS[self]

    @classmethod
    def parse(cls, value: Any) -> "DocumentKind":
        if isinstance(value, cls):
            return value
        for kind in cls:
            if value in (kind.value, kind.name):
                return kind
        raise ValidationError(f"Unknown document kind: {value!r}")


DOCUMENT_SCHEMAS: Dict[DocumentKind, DocumentSchema] = {
    DocumentKind.IDENTITY_CARD: DocumentSchema(
        title="National Identity Card",
        fields=[
            FieldSpec("fullName", "Full Name", normalize_name, required=True),
            FieldSpec("idNumber", "ID Number", normalize_identifier, required=True),
            FieldSpec("dateOfBirth", "Date of Birth", normalize_text, required=True),
            FieldSpec("issuedDate", "Issued Date", normalize_text, required=True),
        ],
        canonical_fields=["idNumber", "fullName", "dateOfBirth", "issuedDate"],
        identity_field="idNumber",
    ),
    DocumentKind.DRIVING_LICENSE: DocumentSchema(
        title="Driving License",
        fields=[
            FieldSpec("fullName", "Full Name", normalize_name, required=True),
            FieldSpec("licenseNumber", "License Number", normalize_identifier, required=True),
            FieldSpec("idNumber", "NIC Number", normalize_identifier),
            FieldSpec("dateOfBirth", "Date of Birth", normalize_text, required=True),
            FieldSpec("dateOfIssue", "Date of Issue", normalize_text, required=True),
            FieldSpec("dateOfExpiry", "Date of Expiry", normalize_text, required=True),
            FieldSpec("vehicleClasses", "Vehicle Classes", normalize_code_list, required=True),
            FieldSpec("bloodGroup", "Blood Group", normalize_identifier),
            FieldSpec("address", "Address", normalize_text),
        ],
        canonical_fields=[
            "licenseNumber", "fullName", "dateOfBirth",
            "dateOfIssue", "dateOfExpiry", "vehicleClasses",
        ],
        identity_field="licenseNumber",
    ),
    DocumentKind.EXAM_RESULT: DocumentSchema(
        title="G.C.E. A/L Certificate",
        fields=[
            FieldSpec("fullName", "Full Name", normalize_name, required=True),
            FieldSpec("year", "Examination Year", normalize_text, required=True),
            FieldSpec("indexNumber", "Index Number", normalize_identifier, required=True),
            FieldSpec("stream", "Subject Stream", normalize_name),
            FieldSpec("zScore", "Z-Score", normalize_text, required=True),
            FieldSpec("subjects", "Subject Results", normalize_subjects),
            FieldSpec("generalTest", "Common General Test", normalize_text),
            FieldSpec("generalEnglish", "General English", normalize_identifier),
            FieldSpec("districtRank", "District Rank", normalize_text),
            FieldSpec("islandRank", "Island Rank", normalize_text),
        ],
        canonical_fields=["fullName", "indexNumber", "zScore"],
        identity_field="indexNumber",
    ),
}

FIELD_LABELS: Dict[str, str] = {
    spec.key: spec.label
    for schema in DOCUMENT_SCHEMAS.values()
    for spec in schema.fields
}


def _exclusive_keys() -> Dict[DocumentKind, Set[str]]:
    exclusive = {}
    for kind, schema in DOCUMENT_SCHEMAS.items():
        others = {key for other, s in DOCUMENT_SCHEMAS.items() if other != kind for key in s.keys}
        exclusive[kind] = set(schema.keys) - others
    return exclusive


EXCLUSIVE_KEYS: Dict[DocumentKind, Set[str]] = _exclusive_keys()


def infer_kind(keys: Iterable[str]) -> DocumentKind:
    """
    Guess the document kind from a set of disclosed field names

    Any field that only a licence carries marks a licence, any exam-only
    field marks an exam result; shared fields alone read as an identity card.
    """
    keys = set(keys)
    if keys & EXCLUSIVE_KEYS[DocumentKind.DRIVING_LICENSE]:
        return DocumentKind.DRIVING_LICENSE
    if keys & EXCLUSIVE_KEYS[DocumentKind.EXAM_RESULT]:
        return DocumentKind.EXAM_RESULT
    return DocumentKind.IDENTITY_CARD


def display_value(value: Any) -> str:
    """Render a stored field value the way it is disclosed"""
    if value is None or value == "" or value == []:
        return MISSING
    if isinstance(value, list):
        parts = []
        for item in value:
            if isinstance(item, dict) and "subjectCode" in item:
                parts.append(f"{item['subjectCode']}: {item.get('result', '')}")
            else:
                parts.append(str(item))
        return ", ".join(parts)
    return str(value)


# ==================== RECORD ====================

@dataclass
class DocumentRecord:
    """
    A holder's document: kind, normalized field values and fingerprint

    The fingerprint is recomputed from the canonical fields on every change
    (see ``with_fields``); it is never taken from outside.
    """
    kind: DocumentKind
    fields: Dict[str, Any] = field(default_factory=dict)
    fingerprint: str = field(default="", init=False)
    created_at: str = ""
    updated_at: str = ""
    canonical_version: int = 1

    def __post_init__(self):
        if not self.created_at:
            self.created_at = utc_now()
        if not self.updated_at:
            self.updated_at = self.created_at
        self.canonical_version = self.kind.schema.canonical_version
        self.fingerprint = self._compute_fingerprint()

    @classmethod
    def create(cls, kind: Any, raw_fields: Dict[str, Any]) -> "DocumentRecord":
        """
        Normalize raw input and build a record

        Raises:
            ValidationError: unknown field, or a required field is empty
        """
        kind = DocumentKind.parse(kind)
        fields = normalize_fields(kind, raw_fields)
        errors = missing_required(kind, fields)
        if errors:
            raise ValidationError("; ".join(errors))
        return cls(kind=kind, fields=fields)

    def _compute_fingerprint(self) -> str:
        from .hashing import compute_fingerprint
        return compute_fingerprint(self.kind, self.canonical_form())

    def canonical_form(self) -> List[str]:
        return canonical_form(self.kind, self.fields)

    @property
    def identity_value(self) -> str:
        return self.fields.get(self.kind.schema.identity_field, "")

    def with_fields(self, changes: Dict[str, Any]) -> "DocumentRecord":
        """Return an edited copy with a freshly computed fingerprint"""
        merged = dict(self.fields)
        merged.update(normalize_fields(self.kind, changes))
        errors = missing_required(self.kind, merged)
        if errors:
            raise ValidationError("; ".join(errors))
        return DocumentRecord(
            kind=self.kind,
            fields=merged,
            created_at=self.created_at,
            updated_at=utc_now(),
        )

    def refresh(self) -> "DocumentRecord":
        """Recompute fingerprint and touch updated_at (called on every save)"""
        self.fingerprint = self._compute_fingerprint()
        self.updated_at = utc_now()
        return self

    def disclosable_fields(self) -> List[FieldSpec]:
        """Fields of this kind that have a value, in schema order"""
        return [
            spec for spec in self.kind.schema.fields
            if self.fields.get(spec.key) not in (None, "", [])
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "fields": dict(self.fields),
            "hash": self.fingerprint,
            "canonicalVersion": self.canonical_version,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DocumentRecord":
        # stored hashes are ignored on purpose: fingerprint always comes from the fields
        return cls(
            kind=DocumentKind.parse(data.get("kind")),
            fields=normalize_fields(DocumentKind.parse(data.get("kind")), data.get("fields", {})),
            created_at=data.get("createdAt", ""),
            updated_at=data.get("updatedAt", ""),
        )


def normalize_fields(kind: DocumentKind, raw_fields: Dict[str, Any]) -> Dict[str, Any]:
    schema = kind.schema
    normalized: Dict[str, Any] = {}
    for key, value in raw_fields.items():
        spec = schema.field(key)
        if spec is None:
            raise ValidationError(f"Field {key!r} is not part of {schema.title}")
        value = spec.normalizer(value)
        if value not in ("", []):
            normalized[key] = value
    return normalized


def missing_required(kind: DocumentKind, fields: Dict[str, Any]) -> List[str]:
    return [
        f"{spec.label} is required"
        for spec in kind.schema.fields
        if spec.required and fields.get(spec.key) in (None, "", [])
    ]


def canonical_form(kind: DocumentKind, fields: Dict[str, Any]) -> List[str]:
    """Ordered, normalized canonical values; absent fields become the "-" sentinel"""
    schema = kind.schema
    values = []
    for key in schema.canonical_fields:
        spec = schema.field(key)
        value = spec.normalizer(fields.get(key))
        if isinstance(value, list):
            value = ",".join(str(item) for item in value)
        values.append(value if value else MISSING)
    return values
