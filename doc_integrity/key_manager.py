"""
Key Manager - Quản lý khóa cho verifier và ledger signer

Supports:
- RSA-2048 key pairs for verification requests (holder encrypts to the
  verifier's public key, verifier decrypts with the private key)
- secp256k1 signer account (Ethereum) for registry writes
"""

import json
import uuid
from typing import Dict, Optional, Union
from dataclasses import dataclass, asdict

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from eth_account import Account
from eth_account.signers.local import LocalAccount

from .documents import utc_now
from .exceptions import DecryptionError, ValidationError


RSA_KEY_SIZE = 2048
RSA_PUBLIC_EXPONENT = 65537
# PKCS#1 v1.5 padding takes 11 bytes of every block
PKCS1V15_OVERHEAD = 11


@dataclass
class KeyPair:
    """PEM encoded RSA key pair for one verification request"""
    key_id: str
    public_key_pem: str
    private_key_pem: Optional[str] = None  # Only kept by the verifier, never shared
    created_at: str = ""

    def __post_init__(self):
        if not self.created_at:
            self.created_at = utc_now()

    def public_only(self) -> "KeyPair":
        return KeyPair(key_id=self.key_id, public_key_pem=self.public_key_pem, created_at=self.created_at)


# ==================== PEM HELPERS ====================

def load_public_key(public_key_pem: Union[str, bytes]) -> rsa.RSAPublicKey:
    """
    Parse a recipient public key (SubjectPublicKeyInfo or PKCS#1 PEM)

    Raises:
        ValidationError: not an RSA public key
    """
    data = public_key_pem.encode() if isinstance(public_key_pem, str) else public_key_pem
    try:
        key = serialization.load_pem_public_key(data)
    except ValueError as e:
        raise ValidationError(f"Invalid public key: {e}") from None
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValidationError("Recipient key must be an RSA public key")
    return key


def load_private_key(private_key_pem: Union[str, bytes], password: Optional[bytes] = None) -> rsa.RSAPrivateKey:
    """
    Parse a verifier private key

    Raises:
        DecryptionError: unreadable or not an RSA key. The key text itself
            never appears in the message.
    """
    data = private_key_pem.encode() if isinstance(private_key_pem, str) else private_key_pem
    try:
        key = serialization.load_pem_private_key(data, password=password)
    except (ValueError, TypeError):
        raise DecryptionError("Private key could not be read") from None
    if not isinstance(key, rsa.RSAPrivateKey):
        raise DecryptionError("Private key must be an RSA key")
    return key


def max_plaintext_size(public_key: rsa.RSAPublicKey) -> int:
    """Largest message PKCS#1 v1.5 can encrypt under this key (245 bytes for 2048-bit)"""
    return public_key.key_size // 8 - PKCS1V15_OVERHEAD


class KeyManager:
    """
    Manages verifier key pairs

    Features:
    - Generate RSA key pairs (one per verification request)
    - Export public keys, keep private keys local
    - Save/load key pairs, private keys encrypted when a password is given
    """

    def __init__(self):
        self._keys: Dict[str, KeyPair] = {}

    # ==================== KEY GENERATION ====================

    def generate_keypair(self, key_id: Optional[str] = None, key_size: int = RSA_KEY_SIZE) -> KeyPair:
        """
        Generate RSA key pair

        Args:
            key_id: Optional id, random UUID otherwise
            key_size: Modulus size in bits

        Returns:
            KeyPair with PEM encoded public (SubjectPublicKeyInfo) and
            private (PKCS#8) keys
        """
        private_key = rsa.generate_private_key(
            public_exponent=RSA_PUBLIC_EXPONENT,
            key_size=key_size,
        )

        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption()
        ).decode("utf-8")
        public_pem = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo
        ).decode("utf-8")

        keypair = KeyPair(
            key_id=key_id or str(uuid.uuid4()),
            public_key_pem=public_pem,
            private_key_pem=private_pem,
        )

        self._keys[keypair.key_id] = keypair
        return keypair

    # ==================== KEY MANAGEMENT ====================

    def get_key(self, key_id: str) -> Optional[KeyPair]:
        return self._keys.get(key_id)

    def list_keys(self) -> list:
        return list(self._keys.keys())

    def remove_key(self, key_id: str) -> bool:
        return self._keys.pop(key_id, None) is not None

    def export_public_keys(self) -> Dict[str, Dict]:
        """Export all public keys (no private keys)"""
        return {
            key_id: asdict(keypair.public_only())
            for key_id, keypair in self._keys.items()
        }

    def save_keys(self, filepath: str, password: Optional[str] = None):
        """
        Save keys to file

        Private keys are re-serialized with BestAvailableEncryption when a
        password is given, stored as plain PKCS#8 otherwise.
        """
        data = {}
        for key_id, keypair in self._keys.items():
            entry = asdict(keypair)
            if password and keypair.private_key_pem:
                key = load_private_key(keypair.private_key_pem)
                entry["private_key_pem"] = key.private_bytes(
                    encoding=serialization.Encoding.PEM,
                    format=serialization.PrivateFormat.PKCS8,
                    encryption_algorithm=serialization.BestAvailableEncryption(password.encode())
                ).decode("utf-8")
                entry["encrypted"] = True
            data[key_id] = entry

        with open(filepath, 'w') as f:
            json.dump(data, f, indent=2)

    def load_keys(self, filepath: str, password: Optional[str] = None):
        """Load keys from file"""
        with open(filepath, 'r') as f:
            data = json.load(f)

        for key_id, key_data in data.items():
            encrypted = key_data.pop("encrypted", False)
            if encrypted:
                if not password:
                    raise DecryptionError(f"Key {key_id} is encrypted, password required")
                key = load_private_key(key_data["private_key_pem"], password=password.encode())
                key_data["private_key_pem"] = key.private_bytes(
                    encoding=serialization.Encoding.PEM,
                    format=serialization.PrivateFormat.PKCS8,
                    encryption_algorithm=serialization.NoEncryption()
                ).decode("utf-8")
            self._keys[key_id] = KeyPair(**key_data)


# ==================== LEDGER SIGNER ====================

def load_signer(private_key: str) -> LocalAccount:
    """
    Create the ledger signer account from a hex private key

    Raises:
        ValidationError: key is not a valid secp256k1 private key
    """
    try:
        return Account.from_key(private_key)
    except Exception as e:  # eth_keys raises its own ValidationError type
        raise ValidationError(f"Invalid signer key: {type(e).__name__}") from None
