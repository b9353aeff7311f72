"""Main FastAPI application entry point."""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from farm_safety.api.routes import router
from farm_safety.config import configure_logging
from farm_safety.database import Base, engine
# Import models to register them with SQLAlchemy Base
from farm_safety.models.audit import AuditEntryRecord  # noqa: F401
from farm_safety.models.domain import (  # noqa: F401
    ApprovalRequestRecord,
    JidokaEventRecord,
    RollbackPlanRecord,
    SensorReadingRecord,
)

configure_logging()

# Create database tables
Base.metadata.create_all(bind=engine)

# Create FastAPI app
app = FastAPI(
    title="Farm Safety & Audit Service",
    description="Guardrails, approval gating, a hash-chained audit log, Jidoka stop-the-line and rollback plans for farm actuators.",
    version="0.1.0"
)

# Enable CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Dashboard runs on another origin; restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(router, prefix="/api", tags=["Farm Safety"])


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "Farm Safety"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
