"""
SC Engine - FastAPI Application

Main entry point for the SC allocation and federated learning node.

Pipeline:
- KPI snapshots → Impact evaluation → Learning weights
- Learning weights → Allocation policy → Wallet ledger
- Impact metrics → Signed bundle → Peers → Ingestion → Global prior
- DAO tally → Approval queue (parallel governance path)
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__, config
from .database import init_db
from .errors import SCEngineError
from .routers import (
    allocation_router,
    dao_router,
    federation_router,
    scheduler_router,
    wallets_router,
)


logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    logger.info(f"SC Engine node {config.NODE_NAME} started")
    yield

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="SC Engine",
    description="""
    SC Engine - Adaptive Resource Allocation with Federated Learning

    Allocates SC across divisions, re-learns allocation weights from
    measured impact, and exchanges signed, privacy-preserving learning
    signals with peer nodes.

    ## Key Principles
    - Rebalancing simulates by default; large moves need approval
    - Wallet balances never go negative (atomic conditional updates)
    - Inbound bundles are verified byte-for-byte before use
    - Weight drift from federation is capped per merge
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SCEngineError)
async def sc_engine_error_handler(request: Request, exc: SCEngineError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
    return JSONResponse(status_code=400, content={"error": f"Invalid request: {problems}"})


# Include routers
app.include_router(federation_router)
app.include_router(allocation_router)
app.include_router(dao_router)
app.include_router(wallets_router)
app.include_router(scheduler_router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": __version__, "node": config.NODE_NAME}


# For running with: python -m sc_engine.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
