import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import structlog
import uvicorn

from doc_integrity import __version__
from doc_integrity.auth import Principal, bearer_token, decode_token
from doc_integrity.config import Settings, get_settings
from doc_integrity.exceptions import (
    AuthenticationError,
    AuthorizationError,
    ChainError,
    DecodeError,
    DecryptionError,
    DuplicateError,
    IntegrityError,
    PayloadTooLarge,
    ValidationError,
)
from doc_integrity.hashing import commit_identity
from doc_integrity.ledger import HashLedger, build_ledger
from doc_integrity.observability import bind_request_id, clear_request_context, configure_logging
from doc_integrity.registry_client import HashRegistryClient
from doc_integrity.vault_service import VaultService
from doc_integrity.verifier import SessionState


logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# Most specific class first: AuthenticationError subclasses AuthorizationError
ERROR_STATUS = [
    (ValidationError, 400),
    (AuthenticationError, 401),
    (AuthorizationError, 403),
    (DuplicateError, 409),
    (PayloadTooLarge, 413),
    (DecodeError, 422),
    (DecryptionError, 422),
    (ChainError, 502),
]


# ==================== REQUEST BODIES ====================

class StoreInitialRequest(BaseModel):
    identityId: str
    hashHex: str


class UpdateHashRequest(BaseModel):
    identityId: str
    newHashHex: str


class CommitRequest(BaseModel):
    identifier: str


class VerificationRequestBody(BaseModel):
    verifier: str
    documentType: str
    description: str = ""


class InspectRequest(BaseModel):
    data: str
    privateKeyPem: Optional[str] = None


# ==================== DEPENDENCIES ====================

def get_registry(request: Request) -> HashRegistryClient:
    return request.app.state.registry


def get_vault(request: Request) -> VaultService:
    return request.app.state.vault


def get_principal(
    request: Request,
    authorization: Optional[str] = Header(default=None)
) -> Optional[Principal]:
    """Principal from the bearer token, None when no token was sent"""
    token = bearer_token(authorization)
    if not token:
        return None
    settings: Settings = request.app.state.settings
    return decode_token(token, settings.JWT_SECRET, settings.JWT_ALGORITHM)


def error_status(exc: IntegrityError) -> int:
    for error_cls, status in ERROR_STATUS:
        if isinstance(exc, error_cls):
            return status
    return 500


# ==================== APP ====================

def create_app(settings: Optional[Settings] = None, ledger: Optional[HashLedger] = None) -> FastAPI:
    """
    Build the registry API

    Args:
        settings: Defaults to environment / .env settings
        ledger: Ledger adapter; built from settings when omitted
    """
    settings = settings or get_settings()
    ledger = ledger or build_ledger(settings.LEDGER_BACKEND, settings.registry_config())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.ENVIRONMENT, settings.LOG_LEVEL)
        logger.info(
            "api_starting",
            version=__version__,
            ledger_backend=settings.LEDGER_BACKEND,
            environment=settings.ENVIRONMENT,
        )
        yield
        logger.info("api_stopped")

    app = FastAPI(title="Document Integrity Registry API", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    registry = HashRegistryClient(
        ledger,
        timeout=settings.LEDGER_TIMEOUT_SECONDS,
        max_retries=settings.LEDGER_MAX_RETRIES,
        backoff=settings.LEDGER_BACKOFF_SECONDS,
    )
    app.state.settings = settings
    app.state.ledger = ledger
    app.state.registry = registry
    app.state.vault = VaultService(registry, verify_base_url=settings.VERIFY_BASE_URL)

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = bind_request_id(request.headers.get(REQUEST_ID_HEADER, ""))
        start_time = time.perf_counter()
        try:
            response = await call_next(request)
            logger.info(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            )
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            clear_request_context()

    @app.exception_handler(IntegrityError)
    async def integrity_error_handler(request: Request, exc: IntegrityError):
        status = error_status(exc)
        log = logger.warning if status >= 500 else logger.info
        log("request_rejected", error_type=type(exc).__name__, status_code=status, reason=str(exc))
        return JSONResponse(status_code=status, content={"success": False, "error": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        fields = ", ".join(".".join(str(p) for p in err["loc"] if p != "body") for err in exc.errors())
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": f"Invalid request body: {fields}"},
        )

    # ==================== REGISTRY ====================

    @app.get("/")
    async def service_info():
        return {
            "service": "document-integrity-registry",
            "version": __version__,
            "ledger": settings.LEDGER_BACKEND,
        }

    @app.post("/store-initial", status_code=201)
    async def store_initial(
        body: StoreInitialRequest,
        principal: Optional[Principal] = Depends(get_principal),
        registry: HashRegistryClient = Depends(get_registry),
    ):
        """Register the first hash of an identity (authority only)"""
        receipt = await registry.store_initial(principal, body.identityId, body.hashHex)
        return {"success": True, **receipt.to_dict()}

    @app.post("/update-hash")
    async def update_hash(
        body: UpdateHashRequest,
        principal: Optional[Principal] = Depends(get_principal),
        registry: HashRegistryClient = Depends(get_registry),
    ):
        """Revoke the current hash and install a new one (authority only)"""
        receipt = await registry.update(principal, body.identityId, body.newHashHex)
        return {"success": True, **receipt.to_dict()}

    @app.get("/verify/{identity_id}/{hash_hex}")
    async def verify_hash(identity_id: str, hash_hex: str, registry: HashRegistryClient = Depends(get_registry)):
        """Public read: is hash the identity's current hash?"""
        valid = await registry.verify(identity_id, hash_hex)
        return {"success": True, "valid": valid}

    # ==================== HELPERS ====================

    @app.post("/identity/commit")
    async def identity_commit(body: CommitRequest):
        """Natural identifier -> registry identity id"""
        return {"success": True, "identityId": commit_identity(body.identifier)}

    @app.post("/verification-requests", status_code=201)
    async def create_verification_request(body: VerificationRequestBody, vault: VaultService = Depends(get_vault)):
        """
        Generate a verifier key pair and the request descriptor

        The descriptor JSON is what the holder scans; the private key is
        returned once and not kept by the server.
        """
        descriptor, key_pair = vault.create_verification_request(
            body.verifier, body.documentType, body.description
        )
        vault.key_manager.remove_key(key_pair.key_id)
        return {
            "success": True,
            "request": descriptor.to_dict(),
            "qr": descriptor.to_json(),
            "keyId": key_pair.key_id,
            "privateKeyPem": key_pair.private_key_pem,
        }

    @app.post("/disclosures/inspect")
    async def inspect_disclosure(body: InspectRequest, vault: VaultService = Depends(get_vault)):
        """Decode a scanned payload, decrypt when a key is given, and check the registry"""
        session = vault.open_session(body.data)
        if session.state == SessionState.ENCRYPTED and body.privateKeyPem:
            session.submit_key(body.privateKeyPem)
        result = await session.verify()
        return {"success": True, **result.to_dict()}

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("backend.api:app", host="0.0.0.0", port=8000)
