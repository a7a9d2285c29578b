"""
FastAPI server for the agent cash/bitcoin exchange engine
Escrow, transfer routing and fee quote endpoints plus the background escrow jobs
"""

import logging
import os
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from config import Config

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
# Third-party loggers are noisy at INFO
logging.getLogger('apscheduler').setLevel(logging.WARNING)
logging.getLogger('aiohttp.access').setLevel(logging.WARNING)

from database import create_tables, dispose_engine  # noqa: E402
from jobs.escrow_sweep_scheduler import EscrowSweepScheduler  # noqa: E402
from routes.agent_routes import router as agent_router  # noqa: E402
from routes.escrow_routes import router as escrow_router  # noqa: E402
from routes.transfer_routes import router as transfer_router  # noqa: E402
from services.escrow_coordinator import get_escrow_coordinator  # noqa: E402

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: verify schema, start the escrow jobs.
    Shutdown: stop the jobs and release database connections.
    """
    logger.info(f"🔧 Worker {os.getpid()} starting...")
    Config.log_environment_config()

    await create_tables()

    scheduler = None
    if Config.RUN_ESCROW_JOBS:
        scheduler = EscrowSweepScheduler(get_escrow_coordinator())
        scheduler.start()
    else:
        logger.info("⏸️ Escrow background jobs disabled for this worker")

    yield

    logger.info(f"🔄 Worker {os.getpid()} shutting down...")
    if scheduler is not None:
        scheduler.stop()
    await dispose_engine()


app = FastAPI(
    title="Agent Cash Exchange Engine",
    description="Escrowed cash/bitcoin exchange through agents and routed bitcoin transfers",
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": {"error": "ValidationError", "message": "Invalid request body", "fields": jsonable_encoder(exc.errors())}},
    )


@app.get("/health")
async def health_check():
    return {"status": "healthy", "environment": Config.CURRENT_ENVIRONMENT}


app.include_router(escrow_router)
app.include_router(transfer_router)
app.include_router(agent_router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api_server:app", host="0.0.0.0", port=int(os.getenv("PORT", "5000")))
