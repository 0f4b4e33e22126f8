"""Main FastAPI application for the XRP vault orchestrator."""

import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.dependencies import set_orchestrator
from api.models import HealthResponse
from api.routes import deposits, positions, withdrawals, websocket
from config import OrchestratorConfig
from orchestrator import Orchestrator

logger = logging.getLogger(__name__)

SERVICE_NAME = "XRP Vault Orchestrator API"
VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    # Startup
    logger.info(f"Starting {SERVICE_NAME}...")

    load_dotenv()
    config = OrchestratorConfig.load()
    orchestrator = Orchestrator(config)
    await orchestrator.start()

    # Push orchestrator events to connected WebSocket clients
    remove_listener = orchestrator.add_event_listener(websocket.manager.broadcast)
    set_orchestrator(orchestrator)
    logger.info(f"{SERVICE_NAME} started successfully")

    yield

    # Shutdown
    logger.info(f"Stopping {SERVICE_NAME}...")
    remove_listener()
    set_orchestrator(None)
    await orchestrator.stop()
    logger.info(f"{SERVICE_NAME} stopped")


# Create FastAPI app
app = FastAPI(
    title=SERVICE_NAME,
    description="Deposit, withdrawal and position tracking across XRPL, the bridge and the vault",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

# Enable CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(deposits.router)
app.include_router(positions.router)
app.include_router(withdrawals.router)
app.include_router(websocket.router)


@app.get("/", response_model=HealthResponse)
async def root():
    """API health check."""
    return HealthResponse(
        status="online",
        service=SERVICE_NAME,
        version=VERSION
    )


@app.get("/health")
async def health_check():
    """Simple health check for monitoring."""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
        log_level="info"
    )
