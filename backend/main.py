from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest

from database import close_db, init_db
from observability.middleware import PrometheusMiddleware
from routers import deployments
from settings import get_settings


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    await init_db()
    yield
    await close_db()


app = FastAPI(
    title="n8nctl",
    description="Deployment lifecycle orchestrator for a containerized n8n instance",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(PrometheusMiddleware)

app.include_router(deployments.router, prefix="/api", tags=["deployments"])


@app.get("/health")
async def health_check():
    settings = get_settings()
    return {
        "status": "healthy",
        "managed_unit": settings.container_name,
        "project_root": str(settings.root),
    }


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(), media_type="text/plain; version=0.0.4")
