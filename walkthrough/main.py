import os
import time
import logging
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from .auth_middleware import WorkerAuthMiddleware
from .metrics import MetricsRegistry
from .pipeline.errors import PipelineError
from .pipeline.routes import classification_router, generation_router, get_metrics

load_dotenv()

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Worker starting up...")
    get_metrics().set_gauge("start_time", time.time())
    yield
    logger.info("Worker shutting down...")


app = FastAPI(title="Walkthrough media worker", lifespan=lifespan)
app.add_middleware(WorkerAuthMiddleware)
app.include_router(classification_router)
app.include_router(generation_router)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    logger.warning(f"{request.method} {request.url.path} → {exc.status_code} [{exc.code}] {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/health")
def health_check():
    """Verify worker is running and env vars are configured."""
    return {
        "status": "ok",
        "gemini_api_key_set": bool(os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY")),
        "fal_key_set": bool(os.environ.get("FAL_KEY")),
        "supabase_url_set": bool(os.environ.get("SUPABASE_URL")),
        "storage_backend": os.environ.get("STORAGE_BACKEND", "supabase"),
    }


@app.get("/metrics")
def metrics_endpoint(metrics: MetricsRegistry = Depends(get_metrics)):
    """Return a snapshot of all worker metrics."""
    return metrics.get_snapshot()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("walkthrough.main:app", host="0.0.0.0", port=port, reload=True)
