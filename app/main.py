from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import logging

from app.core.config import settings
from app.api import cron, jobs, revenue

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Revenue Sync API", version="1.0.0")


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Log unhandled errors with the failing route; the client gets a generic 500."""
    logger.exception("Unhandled exception on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


app.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
app.include_router(cron.router, prefix="/cron", tags=["cron"])
app.include_router(revenue.router, prefix="/websites", tags=["revenue"])


@app.get("/")
async def root():
    return {"message": "Revenue Sync API", "version": "1.0.0"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
