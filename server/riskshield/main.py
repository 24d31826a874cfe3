from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import load_settings
from .database import close_pool, init_db, init_pool


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    settings = load_settings()
    print(f"[RiskShield] Starting server on port {settings.port}")
    if settings.cron_test_mode:
        print("[RiskShield] CRON_TEST_MODE is on; outbound messages are logged, not sent")

    await init_pool(settings.database_url)
    await init_db()

    yield

    await close_pool()
    print("[RiskShield] Server shutdown complete")


app = FastAPI(
    title="RiskShield Compliance API",
    description="Subcontractor insurance compliance dashboards and notification jobs",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS - allow frontend dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://localhost:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

from .routes import dashboard_router, jobs_router

app.include_router(dashboard_router, prefix="/api/companies", tags=["dashboard"])
app.include_router(jobs_router, prefix="/api/jobs", tags=["jobs"])


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "riskshield"}
