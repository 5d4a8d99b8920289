"""
FastAPI server exposing the E2EE core.

This server:
- Initialises key material and hands out pre-key bundles
- Encrypts and decrypts messages for the authenticated user
- Serves safety numbers, key rotation and session reset
- Never stores decrypted plaintext
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from e2ee.config import E2EEConfig
from e2ee.envelope import FallbackEnvelope
from e2ee.errors import (
    AuthenticityError,
    E2EEError,
    IntegrityError,
    KeyDerivationError,
    KeyIntegrityError,
    MalformedEnvelopeError,
    PreKeyExhaustedError,
    ReplayError,
    StaleMessageError,
    StorageError,
    UnknownSessionError,
    UnknownUserError,
    UnsupportedVersionError,
    InvalidKeyError,
    KeyAuthenticityError,
)
from e2ee.service import E2EEService
from .auth import current_user
from .database import KeyStore

logger = logging.getLogger(__name__)

STATUS_CODES = [
    ((UnknownUserError, UnknownSessionError), 404),
    ((PreKeyExhaustedError,), 409),
    ((StorageError,), 503),
    ((KeyIntegrityError,), 500),
    ((AuthenticityError, IntegrityError, ReplayError, StaleMessageError, UnsupportedVersionError,
      MalformedEnvelopeError, KeyDerivationError, InvalidKeyError, KeyAuthenticityError), 422),
]


def status_for(error: E2EEError) -> int:
    for kinds, status in STATUS_CODES:
        if isinstance(error, kinds):
            return status
    return 500


# Pydantic models for API
class EncryptRequest(BaseModel):
    recipient_id: str = Field(alias="recipientId")
    plaintext: str
    metadata: Optional[str] = None


class DecryptRequest(BaseModel):
    envelope: Union[dict, str]


def create_app(service: Optional[E2EEService] = None) -> FastAPI:
    """
    Build the FastAPI app around an E2EE service.

    Args:
        service: Service to expose; defaults to one over a ``KeyStore``
            configured from the environment
    """
    if service is None:
        config = E2EEConfig.from_env()
        service = E2EEService(KeyStore(config=config), config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        await service.store.create_tables()
        logger.info("E2EE key store ready")
        yield
        await service.store.close()
        logger.info("E2EE key store closed")

    app = FastAPI(
        title="VaultKe E2EE",
        description="End-to-end encryption core: key bundles, sessions and message envelopes",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.service = service

    @app.exception_handler(E2EEError)
    async def e2ee_error_handler(request: Request, exc: E2EEError):
        return JSONResponse(status_code=status_for(exc), content=exc.to_dict())

    @app.post("/api/e2ee/initialize")
    async def initialize(user_id: str = Depends(current_user)):
        """Create the caller's key material (idempotent)"""
        bundle = await service.initialise_user_keys(user_id)
        return {"success": True, "userId": user_id, "bundle": bundle.to_dict()}

    @app.get("/api/e2ee/key-bundle/{user_id}")
    async def key_bundle(user_id: str, caller: str = Depends(current_user)):
        """
        Hand out a user's pre-key bundle.

        Each call consumes one of that user's one-time pre-keys.
        """
        bundle = await service.get_bundle(user_id)
        return bundle.to_dict()

    @app.post("/api/e2ee/encrypt")
    async def encrypt(request: EncryptRequest, user_id: str = Depends(current_user)):
        """Encrypt a message from the caller to ``recipientId``"""
        if request.recipient_id == user_id:
            raise HTTPException(status_code=400, detail="Cannot encrypt to yourself")
        envelope = await service.encrypt_message(
            user_id, request.recipient_id, request.plaintext, request.metadata
        )
        return envelope.to_dict()

    @app.post("/api/e2ee/decrypt")
    async def decrypt(request: DecryptRequest, user_id: str = Depends(current_user)):
        """
        Decrypt an envelope addressed to the caller.

        Legacy fallback strings come back tagged ``FALLBACK`` and must be
        shown as unencrypted.
        """
        envelope = service.parse(request.envelope)
        if not isinstance(envelope, FallbackEnvelope) and envelope.recipient_id != user_id:
            raise HTTPException(status_code=403, detail="Envelope is not addressed to you")

        plaintext, metadata = await service.decrypt_message(envelope)
        return {
            "plaintext": plaintext.decode("utf-8", errors="replace"),
            "metadata": metadata.to_dict(),
        }

    @app.get("/api/e2ee/safety-number/{user_id}")
    async def safety_number(user_id: str, caller: str = Depends(current_user)):
        """Safety number between the caller and ``user_id``"""
        number = await service.compute_safety_number(caller, user_id)
        return {"safetyNumber": number, "users": [caller, user_id]}

    @app.post("/api/e2ee/keys/rotate")
    async def rotate_keys(user_id: str = Depends(current_user)):
        """Rotate the caller's signed pre-key"""
        rotated = await service.rotate_signed_pre_key(user_id)
        return {"success": True, "signedPreKey": rotated.to_dict()}

    @app.post("/api/e2ee/session/reset/{user_id}")
    async def reset_session(user_id: str, caller: str = Depends(current_user)):
        """Drop the session between the caller and ``user_id``"""
        reset = await service.reset_session(caller, user_id)
        return {"success": True, "reset": reset}

    @app.get("/api/e2ee/security-status")
    async def security_status():
        return service.security_status()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=8000)
