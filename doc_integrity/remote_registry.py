"""HTTP client for the registry service.

Verifiers that do not run their own ledger node read through the public
``GET /verify/{identityId}/{hash}`` endpoint; authority tooling writes
through the bearer-protected endpoints.

Example:
    async with RemoteRegistryClient("https://registry.example") as registry:
        valid = await registry.verify(identity_id, fingerprint)
"""

import asyncio
from typing import Any, Dict, Optional

import httpx
import structlog

from .exceptions import (
    AuthenticationError,
    AuthorizationError,
    ChainError,
    DuplicateError,
    ValidationError,
)
from .ledger import TransactionReceipt
from .registry_client import normalize_hex


logger = structlog.get_logger(__name__)

_ERRORS_BY_STATUS = {
    400: ValidationError,
    401: AuthenticationError,
    403: AuthorizationError,
    409: DuplicateError,
}


class RemoteRegistryClient:
    """Client for the registry HTTP surface."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize client.

        Args:
            base_url: Registry service base URL.
            token: Authority bearer token, only needed for writes.
            timeout: Request timeout in seconds.
            max_retries: Retries for reads on transport errors and 503/504.
            backoff: Base delay between retries, doubled each time.
            transport: Optional httpx transport (tests).
        """
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.backoff = backoff
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    async def __aenter__(self) -> "RemoteRegistryClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def verify(self, identity_id: str, hash_hex: str) -> bool:
        """Ask the registry whether hash is the identity's current hash."""
        identity_id = normalize_hex(identity_id, "identityId")
        hash_hex = normalize_hex(hash_hex, "hash")
        data = await self._request("GET", f"/verify/{identity_id}/{hash_hex}", retry=True)
        return bool(data.get("valid"))

    async def store_initial(self, identity_id: str, hash_hex: str) -> TransactionReceipt:
        data = await self._request(
            "POST",
            "/store-initial",
            json={"identityId": identity_id, "hashHex": hash_hex},
        )
        return TransactionReceipt(tx_hash=data["txHash"], block_number=data["blockNumber"])

    async def update(self, identity_id: str, new_hash_hex: str) -> TransactionReceipt:
        data = await self._request(
            "POST",
            "/update-hash",
            json={"identityId": identity_id, "newHashHex": new_hash_hex},
        )
        return TransactionReceipt(tx_hash=data["txHash"], block_number=data["blockNumber"])

    async def _request(self, method: str, path: str, retry: bool = False, **kwargs) -> Dict[str, Any]:
        attempt = 0
        while True:
            try:
                response = await self._client.request(method, path, **kwargs)
                error = None
                if response.status_code in (503, 504):
                    error = ChainError(f"Registry unavailable ({response.status_code})", transient=True)
            except httpx.TransportError as e:
                error = ChainError(f"Registry unreachable: {e}", transient=True, cause=e)

            if error is None:
                return self._unwrap(response)

            if not retry or attempt >= self.max_retries:
                raise error

            delay = self.backoff * (2 ** attempt)
            attempt += 1
            logger.info("registry_retry", path=path, attempt=attempt, delay=delay)
            await asyncio.sleep(delay)

    @staticmethod
    def _unwrap(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.is_success and data.get("success", True):
            return data

        message = data.get("error") or data.get("detail") or f"HTTP {response.status_code}"
        error_cls = _ERRORS_BY_STATUS.get(response.status_code)
        if error_cls is not None:
            raise error_cls(message)
        raise ChainError(message)
