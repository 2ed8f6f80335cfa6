import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from manchengo.app.api.v1.router import router as v1_router
from manchengo.app.logging_config import setup_logging
from manchengo.app.monitoring import monitor_loop
from manchengo.app.settings import ALERT_POLL_INTERVAL_SECONDS
from manchengo.services.errors import DomainError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    task = None
    if ALERT_POLL_INTERVAL_SECONDS > 0:
        task = asyncio.create_task(monitor_loop(ALERT_POLL_INTERVAL_SECONDS))
    yield
    if task is not None:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


app = FastAPI(title="MANCHENGO ERP", version="0.1.0", lifespan=lifespan)


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    if exc.status_code >= 500:
        logger.error("%s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


app.include_router(v1_router, prefix="/v1")
