from contextlib import asynccontextmanager
from fastapi import FastAPI, WebSocket, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import traceback

from config import settings
from api import router, ConnectionManager, handle_websocket
from services.credential_store import CredentialStore
from services.orchestrator import Orchestrator
from utils.logger import setup_logging, get_logger
from utils.utcnow import utcnow

# Setup logging
setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON, log_file=settings.LOG_FILE)
logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting execution agent...", broker_mode=settings.BROKER_MODE)

    manager = ConnectionManager()
    store = CredentialStore.from_settings(settings)
    orchestrator = None
    try:
        await store.initialize()
        logger.info("Credential store initialized")

        orchestrator = Orchestrator.from_settings(settings, store, notifier=manager)
        app.state.ws_manager = manager
        app.state.orchestrator = orchestrator

        await orchestrator.start()
        logger.info("Agent started", state=orchestrator.app_state.value)

        yield
    except Exception as e:
        logger.critical(
            "Startup failed", error=str(e), traceback=traceback.format_exc()
        )
        raise
    finally:
        logger.info("Shutting down...")
        if orchestrator is not None:
            await orchestrator.stop()
        await store.close()
        logger.info("Shutdown complete")


app = FastAPI(
    title="Execution Agent",
    description="Local bridge between the cloud signal engine and the broker",
    version="1.0.0",
    lifespan=lifespan,
)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        traceback=traceback.format_exc(),
    )
    return JSONResponse(
        status_code=500, content={"detail": "Internal server error", "error": str(exc)}
    )


# CORS middleware (local UI only)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# API routes
app.include_router(router, prefix="/api", tags=["Agent"])


# WebSocket endpoint
@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await handle_websocket(
        websocket,
        websocket.app.state.ws_manager,
        getattr(websocket.app.state, "orchestrator", None),
    )


# Health checks
@app.get("/health")
async def health_check():
    """Basic health check"""
    orchestrator = getattr(app.state, "orchestrator", None)
    return {
        "status": "ok",
        "state": orchestrator.app_state.value if orchestrator else None,
        "timestamp": utcnow().isoformat(),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=settings.API_HOST,
        port=settings.API_PORT,
        # Single worker: the agent holds live connections in-process.
        timeout_keep_alive=30,
    )
