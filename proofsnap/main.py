import asyncio
import os
import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

# Load environment variables
from dotenv import load_dotenv
load_dotenv()

from proofsnap import __version__, config
from proofsnap.core.errors import MintError, MintStage, ProofSnapError, ValidationError
from proofsnap.core.utils import decode_base64_content
from proofsnap.models.api import (
    ErrorResponse,
    HealthResponse,
    MediaListResponse,
    MintRequest,
    MintResponse,
    VerifyResponse,
)
from proofsnap.services.coordinator import ProofContext, ProofCoordinator, build_context

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


def create_app(context: Optional[ProofContext] = None) -> FastAPI:
    """Build the API. Without an explicit context one is assembled from config at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting ProofSnap API")
        try:
            ctx = context or build_context()
            app.state.coordinator = ProofCoordinator(ctx)
            logger.info("Proof context initialized",
                        ledger_backend=ctx.ledger.name,
                        storage_backend=ctx.content_store.name,
                        index_backend=ctx.index.name)
        except Exception as e:
            logger.error("Failed to initialize application", error=str(e))
            raise

        yield

        logger.info("Shutting down ProofSnap API")
        close = getattr(app.state.coordinator.context.index, "close", None)
        if close:
            close()

    app = FastAPI(
        title="ProofSnap API",
        description="Tamper-evident media provenance: hash, sign, anchor and verify",
        version=__version__,
        lifespan=lifespan,
        responses={
            400: {"model": ErrorResponse, "description": "Validation Error"},
            500: {"model": ErrorResponse, "description": "Internal Server Error"},
        }
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Mobile clients connect from arbitrary origins
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ProofSnapError)
    async def proofsnap_exception_handler(request: Request, exc: ProofSnapError):
        logger.warning("Request failed",
                       url=str(request.url), method=request.method,
                       error_code=exc.code, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception",
                     url=str(request.url), method=request.method, error=str(exc), exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "internal_server_error", "message": "An unexpected error occurred"}
        )

    _register_routes(app)
    return app


def get_coordinator(request: Request) -> ProofCoordinator:
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service not initialized")
    return coordinator


def _register_routes(app: FastAPI) -> None:

    @app.get("/", response_model=dict)
    async def root():
        """Root endpoint with API information."""
        return {
            "name": "ProofSnap API",
            "version": __version__,
            "description": "Tamper-evident media provenance",
            "docs_url": "/docs",
            "health_url": "/health",
        }

    @app.get("/health", response_model=HealthResponse)
    async def health_check(coordinator: ProofCoordinator = Depends(get_coordinator)):
        """Health of the ledger, content store and index."""
        ctx = coordinator.context
        ledger_health, storage_health, index_ok = await asyncio.gather(
            asyncio.to_thread(ctx.ledger.health_check),
            asyncio.to_thread(ctx.content_store.health_check),
            asyncio.to_thread(ctx.index.health_check),
        )
        components = {
            "ledger": "healthy" if ledger_health.get("available") else "unhealthy",
            "storage": "healthy" if storage_health.get("available") else "unhealthy",
            "index": "healthy" if index_ok else "unhealthy",
        }
        # Without the ledger nothing can be verified; the rest only degrades minting
        if components["ledger"] != "healthy":
            overall_status = "unhealthy"
        elif all(s == "healthy" for s in components.values()):
            overall_status = "healthy"
        else:
            overall_status = "degraded"

        return HealthResponse(
            status=overall_status,
            version=__version__,
            timestamp=datetime.now(timezone.utc),
            components={**components, "ledger_health": ledger_health, "storage_health": storage_health},
        )

    @app.post("/api/v1/mint", response_model=MintResponse)
    async def mint_media(body: MintRequest, coordinator: ProofCoordinator = Depends(get_coordinator)):
        """
        Anchor a proof for the given media.

        The base64 body is decoded to raw bytes before hashing, so the digest
        matches what a verifier computes from the original file.
        """
        try:
            content = decode_base64_content(body.content_bytes)
        except ValidationError as e:
            raise MintError(MintStage.HASH, e)
        result = await coordinator.mint(
            content,
            identity=body.identity,
            signature=body.signature,
            location_claim=body.location_claim,
            device_claim=body.device_claim,
            filename=body.filename,
        )
        return MintResponse(
            digest=result.digest,
            locator=result.locator,
            content_url=result.content_url,
            tx_ref=result.tx_hash,
            block_number=result.block_number,
            verification_key=result.digest,
            verification_url=f"{config.VERIFY_BASE_URL.rstrip('/')}/api/v1/verify/{result.digest}",
            signed=result.signed,
            index_degraded=result.index_degraded,
        )

    @app.get("/api/v1/verify/{key}", response_model=VerifyResponse, response_model_exclude_none=True)
    async def verify_media(key: str, coordinator: ProofCoordinator = Depends(get_coordinator)):
        """Verify by content digest or content locator."""
        result = await coordinator.verify(key)
        response = VerifyResponse(
            verified=result.verified,
            attribution=result.proof.attribution if result.proof else None,
            proof=result.proof,
            ledger_proof=result.ledger_proof,
            message=result.message,
        )
        if not result.verified:
            return JSONResponse(status_code=status.HTTP_404_NOT_FOUND,
                                content=response.model_dump(mode="json", by_alias=True, exclude_none=True))
        return response

    @app.get("/api/v1/creators/{identity}/media", response_model=MediaListResponse)
    async def list_creator_media(
        identity: str,
        limit: int = Query(default=50, ge=1, le=200, description="Maximum number of entries to return"),
        coordinator: ProofCoordinator = Depends(get_coordinator),
    ):
        """Index entries for a creator, newest first."""
        items = await coordinator.list_media(identity, limit=limit)
        return MediaListResponse(identity=identity, items=items)

    @app.delete("/api/v1/media/{record_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def remove_media(record_id: str, coordinator: ProofCoordinator = Depends(get_coordinator)):
        """Hide an entry from the index. The ledger proof stays."""
        if not await coordinator.remove(record_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Media record not found")


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "proofsnap.main:app",
        host=os.getenv("API_HOST", "0.0.0.0"),
        port=int(os.getenv("API_PORT", 8000)),
        reload=os.getenv("DEBUG", "false").lower() == "true",
        log_config=None,  # We handle logging with structlog
    )
