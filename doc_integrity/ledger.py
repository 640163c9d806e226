"""
Ledger adapters for the hash registry

The registry maps an identity commitment (bytes32) to one current document
hash. Adapters are blocking; the registry client runs them off the event
loop with a timeout. All ids and hashes arriving here are already in the
canonical ``0x`` + 64 lowercase hex form.

- InMemoryLedger: in-process registry for development and tests
- Web3Ledger: HashRegistry contract on an Ethereum node
"""

import hashlib
import threading
from typing import Dict, List, Optional, Protocol
from dataclasses import dataclass, field

import structlog
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from .config import RegistryConfig
from .documents import utc_now
from .exceptions import ChainError, DuplicateError, ValidationError
from .key_manager import load_signer


logger = structlog.get_logger(__name__)

ZERO_HASH = "0x" + "00" * 32

HASH_REGISTRY_ABI = [
    {
        "type": "function",
        "name": "storeInitialHash",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "identityId", "type": "bytes32"},
            {"name": "hash", "type": "bytes32"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "updateHash",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "identityId", "type": "bytes32"},
            {"name": "newHash", "type": "bytes32"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "verify",
        "stateMutability": "view",
        "inputs": [
            {"name": "identityId", "type": "bytes32"},
            {"name": "hash", "type": "bytes32"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "type": "function",
        "name": "getCurrentHash",
        "stateMutability": "view",
        "inputs": [{"name": "identityId", "type": "bytes32"}],
        "outputs": [{"name": "", "type": "bytes32"}],
    },
]


@dataclass
class TransactionReceipt:
    """Confirmed write"""
    tx_hash: str
    block_number: int

    def to_dict(self):
        return {"txHash": self.tx_hash, "blockNumber": self.block_number}


@dataclass
class RegistryEntry:
    """identity commitment -> current hash (+ replaced hashes, audit only)"""
    identity_id: str
    current_hash: str
    history: List[str] = field(default_factory=list)
    updated_at: str = ""

    def __post_init__(self):
        if not self.updated_at:
            self.updated_at = utc_now()


class HashLedger(Protocol):
    """Operations the registry client needs from a ledger"""

    def store_initial(self, identity_id: str, hash_hex: str) -> TransactionReceipt:
        ...

    def update(self, identity_id: str, new_hash_hex: str) -> TransactionReceipt:
        ...

    def verify(self, identity_id: str, hash_hex: str) -> bool:
        ...

    def current_hash(self, identity_id: str) -> Optional[str]:
        ...


# ==================== IN-MEMORY ====================

class InMemoryLedger:
    """
    Process-local registry with single-current-hash semantics

    ``update`` moves the previous hash into ``history``; ``verify`` only
    ever matches the current hash. A lock makes each operation atomic, so
    readers see either the old or the new hash.
    """

    def __init__(self):
        self._entries: Dict[str, RegistryEntry] = {}
        self._lock = threading.Lock()
        self._block_number = 0

    def _next_receipt(self, identity_id: str, hash_hex: str) -> TransactionReceipt:
        self._block_number += 1
        tx_hash = hashlib.sha256(f"{self._block_number}:{identity_id}:{hash_hex}".encode()).hexdigest()
        return TransactionReceipt(tx_hash="0x" + tx_hash, block_number=self._block_number)

    def store_initial(self, identity_id: str, hash_hex: str) -> TransactionReceipt:
        with self._lock:
            if identity_id in self._entries:
                raise DuplicateError(f"Identity {identity_id} already has a registered hash")
            self._entries[identity_id] = RegistryEntry(identity_id=identity_id, current_hash=hash_hex)
            return self._next_receipt(identity_id, hash_hex)

    def update(self, identity_id: str, new_hash_hex: str) -> TransactionReceipt:
        with self._lock:
            entry = self._entries.get(identity_id)
            if entry is None:
                raise ChainError(f"Transaction reverted: no hash registered for {identity_id}")
            entry.history.append(entry.current_hash)
            entry.current_hash = new_hash_hex
            entry.updated_at = utc_now()
            return self._next_receipt(identity_id, new_hash_hex)

    def verify(self, identity_id: str, hash_hex: str) -> bool:
        with self._lock:
            entry = self._entries.get(identity_id)
            return entry is not None and entry.current_hash == hash_hex

    def current_hash(self, identity_id: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(identity_id)
            return entry.current_hash if entry else None

    def entry(self, identity_id: str) -> Optional[RegistryEntry]:
        with self._lock:
            entry = self._entries.get(identity_id)
            if entry is None:
                return None
            return RegistryEntry(
                identity_id=entry.identity_id,
                current_hash=entry.current_hash,
                history=list(entry.history),
                updated_at=entry.updated_at,
            )

    def __len__(self) -> int:
        return len(self._entries)


# ==================== WEB3 ====================

class Web3Ledger:
    """
    HashRegistry contract client

    Writes are simulated with ``call`` first so reverts (duplicate entry,
    missing entry) surface before anything is broadcast. Once a transaction
    is sent, every failure is non-transient: the client must not resubmit a
    write that may already be in the mempool.
    """

    def __init__(self, config: RegistryConfig, receipt_timeout: float = 60.0, w3: Optional[Web3] = None):
        if not config.contract_address:
            raise ChainError("Contract address is not configured")
        self.config = config
        self.receipt_timeout = receipt_timeout
        self._w3 = w3 or Web3(Web3.HTTPProvider(config.endpoint))
        self._account = load_signer(config.signer_key)
        self._contract = self._w3.eth.contract(
            address=Web3.to_checksum_address(config.contract_address),
            abi=HASH_REGISTRY_ABI,
        )
        # one signer, one nonce sequence
        self._send_lock = threading.Lock()

    @property
    def signer_address(self) -> str:
        return self._account.address

    @staticmethod
    def _b32(hex_value: str) -> bytes:
        return Web3.to_bytes(hexstr=hex_value)

    def _read(self, fn):
        try:
            return fn.call()
        except ContractLogicError as e:
            raise ChainError(f"Call reverted: {e}", cause=e) from e
        except OSError as e:
            raise ChainError(f"Ledger node unreachable: {e}", transient=True, cause=e) from e
        except Web3Exception as e:
            raise ChainError(f"Ledger call failed: {e}", cause=e) from e

    def _transact(self, fn, action: str) -> TransactionReceipt:
        try:
            fn.call({"from": self._account.address})
        except ContractLogicError as e:
            message = str(e)
            # only storeInitialHash reverts on an existing entry
            if action == "INITIAL_STORE" and "exist" in message.lower():
                raise DuplicateError(message) from e
            raise ChainError(f"Transaction would revert: {message}", cause=e) from e
        except OSError as e:
            raise ChainError(f"Ledger node unreachable: {e}", transient=True, cause=e) from e
        except Web3Exception as e:
            raise ChainError(f"Ledger call failed: {e}", cause=e) from e

        with self._send_lock:
            try:
                tx = fn.build_transaction({
                    "from": self._account.address,
                    "nonce": self._w3.eth.get_transaction_count(self._account.address, "pending"),
                    "gas": self.config.gas_limit,
                    "chainId": self._w3.eth.chain_id,
                })
            except OSError as e:
                raise ChainError(f"Ledger node unreachable: {e}", transient=True, cause=e) from e

            signed = self._account.sign_transaction(tx)
            try:
                tx_hash = self._w3.eth.send_raw_transaction(signed.raw_transaction)
            except (OSError, Web3Exception) as e:
                raise ChainError(f"Transaction state unknown: {e}", cause=e) from e

        try:
            receipt = self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except TimeExhausted as e:
            raise ChainError("Transaction not confirmed", cause=e) from e
        except (OSError, Web3Exception) as e:
            raise ChainError(f"Transaction not confirmed: {e}", cause=e) from e

        if receipt["status"] != 1:
            raise ChainError(f"Transaction reverted ({action})")

        result = TransactionReceipt(
            tx_hash=Web3.to_hex(receipt["transactionHash"]),
            block_number=receipt["blockNumber"],
        )
        logger.info("ledger_transaction_confirmed", action=action, **result.to_dict())
        return result

    def store_initial(self, identity_id: str, hash_hex: str) -> TransactionReceipt:
        if self.current_hash(identity_id) is not None:
            raise DuplicateError(f"Identity {identity_id} already has a registered hash")
        fn = self._contract.functions.storeInitialHash(self._b32(identity_id), self._b32(hash_hex))
        return self._transact(fn, "INITIAL_STORE")

    def update(self, identity_id: str, new_hash_hex: str) -> TransactionReceipt:
        fn = self._contract.functions.updateHash(self._b32(identity_id), self._b32(new_hash_hex))
        return self._transact(fn, "UPDATE_HASH")

    def verify(self, identity_id: str, hash_hex: str) -> bool:
        return bool(self._read(self._contract.functions.verify(self._b32(identity_id), self._b32(hash_hex))))

    def current_hash(self, identity_id: str) -> Optional[str]:
        raw = self._read(self._contract.functions.getCurrentHash(self._b32(identity_id)))
        value = Web3.to_hex(raw)
        return None if value == ZERO_HASH else value


def build_ledger(backend: str, config: RegistryConfig) -> HashLedger:
    """Ledger for the configured backend name"""
    if backend == "memory":
        return InMemoryLedger()
    if backend == "web3":
        return Web3Ledger(config)
    raise ValidationError(f"Unknown ledger backend: {backend!r}")
