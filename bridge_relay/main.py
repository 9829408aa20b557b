"""
Bridge relay API.

Provides REST endpoints for:
- Starting a bridge (POST /bridge/initiate)
- Polling a bridge (GET /bridge/status/{id})
- Operator mint retry (POST /bridge/retry/{id})
- Health checks (GET /health)

The same bridge routes are also served under /api.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .auth import verify_api_token
from .config import get_settings
from .errors import ConfigurationError, ConflictError, ExecutionError, RecordNotFound, ValidationError
from .log import configure_logging
from .models import (
    BridgeRecordResponse,
    HealthResponse,
    InitiateRequest,
    InitiateResponse,
    RetryResponse,
)
from .service import BridgeService

configure_logging(json_logs=True, debug=get_settings().debug)

logger = structlog.get_logger()


# Initialized at startup
_service: BridgeService | None = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    global _service

    settings = get_settings()
    _service = BridgeService.from_settings(settings)

    logger.info(
        "API started",
        version=__version__,
        host=settings.host,
        port=settings.port,
        store_configured=_service.store is not None,
        relayer_configured=_service.orchestrator is not None,
        destination_chain=settings.destination_chain,
    )

    yield

    await _service.shutdown()
    _service = None

    logger.info("API stopped")


def get_service() -> BridgeService:
    """Service dependency."""
    if _service is None:
        raise HTTPException(status_code=503, detail="Bridge service not initialized")
    return _service


app = FastAPI(
    title="Agent Bridge Relay",
    description="Cross-chain USDC relay over Circle CCTP",
    version=__version__,
    lifespan=lifespan,
)

_settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Error mapping
# ============================================================================


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Malformed JSON bodies are bad requests like any other invalid input
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": "Invalid request body", "errors": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": str(exc)})


@app.exception_handler(RecordNotFound)
async def not_found_handler(request: Request, exc: RecordNotFound) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": "Bridge not found"})


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


@app.exception_handler(ExecutionError)
async def execution_error_handler(request: Request, exc: ExecutionError) -> JSONResponse:
    logger.error("request_failed", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": str(exc)})


# ============================================================================
# Health Check
# ============================================================================


@app.get("/health", response_model=HealthResponse)
async def health_check(service: BridgeService = Depends(get_service)) -> HealthResponse:
    """
    Check API health and connectivity.

    Returns store connectivity and RPC connectivity per network.
    """
    result = await service.health()
    healthy = result["store"] and result["relayer_configured"] and all(result["rpc"].values())
    return HealthResponse(
        status="ok" if healthy else "degraded",
        version=__version__,
        **result,
    )


# ============================================================================
# Bridge
# ============================================================================

router = APIRouter(prefix="/bridge", tags=["bridge"])


@router.post("/initiate", response_model=InitiateResponse)
async def initiate_bridge(
    request: InitiateRequest,
    service: BridgeService = Depends(get_service),
) -> InitiateResponse:
    """
    Start a bridge for a payment that already settled on the source chain.

    Returns immediately; the burn, attestation and mint run in the
    background. Poll /bridge/status/{id} for progress.
    """
    return await service.initiate(request)


@router.get(
    "/status/{bridge_id}",
    response_model=BridgeRecordResponse,
    response_model_exclude_none=True,
)
async def bridge_status(
    bridge_id: str,
    service: BridgeService = Depends(get_service),
) -> BridgeRecordResponse:
    """Current state of a bridge. Records expire 24h after creation."""
    record = await service.status(bridge_id)
    return BridgeRecordResponse.from_record(record)


@router.post(
    "/retry/{bridge_id}",
    response_model=RetryResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(verify_api_token)],
)
async def retry_bridge(
    bridge_id: str,
    service: BridgeService = Depends(get_service),
) -> RetryResponse:
    """
    Retry the mint of a failed bridge (operator only).

    Only bridges that got past the burn (messageBytes stored) qualify.
    """
    record = await service.retry(bridge_id)
    return RetryResponse(id=record.id, status=record.status)


app.include_router(router)
app.include_router(router, prefix="/api", include_in_schema=False)


# ============================================================================
# Entry Point
# ============================================================================


def run() -> None:
    """Run the API server."""
    settings = get_settings()
    uvicorn.run(
        "bridge_relay.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
