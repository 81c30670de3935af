"""
FastAPI application entry point.

This module initializes the FastAPI application, configures middleware,
and registers the API routers.
"""
import os
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from leadflow.api.routers import auth, imports
from leadflow.core.config import settings
from leadflow.core.logging_config import configure_logging
from leadflow.domain.imports.queue import import_queue

# Ensure logging is configured before the application starts serving requests.
configure_logging(settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - startup and shutdown events."""
    if os.getenv("SKIP_DB_INIT") == "1":
        print("SKIP_DB_INIT=1 detected; skipping database bootstrap during startup")
        yield
        import_queue.shutdown(wait=False)
        return

    try:
        from leadflow.db.session import init_db
        from leadflow.domain.imports.service import recover_interrupted_jobs

        print("Initializing database tables...")
        init_db()
        print("✓ Database tables ready")

        recovered = recover_interrupted_jobs()
        if recovered:
            print(f"✓ Re-enqueued {len(recovered)} interrupted import job(s)")
    except Exception as e:
        print(f"ERROR: Failed to initialize database tables: {e}")
        print("The application cannot start without proper database setup.")
        raise

    yield  # Application runs here

    import_queue.shutdown(wait=True)


app = FastAPI(
    title="Lead Import API",
    version="1.0.0",
    description="Bulk import of contact spreadsheets into the lead store",
    lifespan=lifespan
)

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
allowed_origins = [origin.strip() for origin in allowed_origins]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router)
app.include_router(imports.router)


@app.get("/")
async def root():
    """Root endpoint returning API information."""
    return {
        "message": "Lead Import API",
        "version": "1.0.0"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint for deployment monitoring."""
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "service": "leadflow-import"
    }
