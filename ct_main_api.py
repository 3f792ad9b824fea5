"""
ChainTrace Compliance Engine - FastAPI Application
HTTP surface for action validation, rule lookup and the audit trail
"""

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from typing import Any, Dict, List, Optional
from contextlib import asynccontextmanager
import logging

from ct_engine_integration import (
    ActionValidationRequest,
    Actor,
    EngineConfig,
    InfrastructureFailure,
    InMemoryComplianceCache,
    InMemoryLedgerClient,
    build_compliance_engine
)
from ct_metrics import metrics_registry

logger = logging.getLogger("ChainTrace.Compliance.api")

# ============================================
# PYDANTIC MODELS (API DTOs)
# ============================================

class ActorRequest(BaseModel):
    wallet_address: str = Field(..., min_length=1, alias="walletAddress")
    role: str = Field(..., min_length=1)

    class Config:
        populate_by_name = True

class ValidateActionRequest(BaseModel):
    action: str = Field(..., min_length=1)
    product_id: str = Field(..., min_length=1, alias="productId")
    actor: ActorRequest
    data: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "action": "product_creation",
                "productId": "CT-2024-001-ABC123",
                "actor": {"walletAddress": "0.0.12345", "role": "Producer"},
                "data": {
                    "productType": "organic_cocoa",
                    "quantity": 500,
                    "origin": {"country": "Ghana", "region": "Ashanti", "farm_id": "FARM-001"},
                    "processingDetails": {
                        "harvest_date": "2026-09-15",
                        "processing_method": "fermentation",
                        "quality_grade": "A"
                    }
                }
            }
        }

class ValidationResponse(BaseModel):
    is_valid: bool
    violations: List[str]
    compliance_id: str
    sequence_step: int
    reason: str
    validated_at: str
    audit: Optional[Dict[str, Any]] = None
    next_action: Optional[str] = None
    credential: Optional[Dict[str, Any]] = None

    class Config:
        json_schema_extra = {
            "example": {
                "is_valid": True,
                "violations": [],
                "compliance_id": "COMP-CT-2024-001-ABC123-1760700000000-X7K2QP",
                "sequence_step": 1,
                "reason": "Action validation successful",
                "validated_at": "2026-10-17T10:00:00",
                "audit": {
                    "transaction_id": "0.0.0@1760700000.000000000-1",
                    "logged_at": "2026-10-17T10:00:00",
                    "compliance_id": "COMP-CT-2024-001-ABC123-1760700000000-X7K2QP",
                    "result": "APPROVED"
                },
                "next_action": "Processor action required",
                "credential": None
            }
        }

class HealthResponse(BaseModel):
    status: str
    version: str
    ledger_entries: int
    ledger_integrity: bool
    cache_entries: int
    cache_expired: int

# ============================================
# APPLICATION LIFECYCLE
# ============================================

class AppState:
    """Global application state."""
    def __init__(self, config: Optional[EngineConfig] = None):
        self.reset(config)

    def reset(self, config: Optional[EngineConfig] = None):
        self.config = config if config is not None else EngineConfig.from_env()
        self.cache = InMemoryComplianceCache(operation_timeout=self.config.cache_timeout)
        self.ledger = InMemoryLedgerClient(topic_id=self.config.ledger_topic_id)
        self.engine = build_compliance_engine(self.config, cache=self.cache, ledger=self.ledger)

app_state = AppState()

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    logger.info("ChainTrace compliance engine starting...")
    logger.info(f"Ledger topic {app_state.config.ledger_topic_id}, lock timeout {app_state.config.lock_timeout}s")
    yield
    app_state.engine.audit_logger.shutdown()
    logger.info("ChainTrace compliance engine shutting down...")

# ============================================
# FASTAPI APPLICATION
# ============================================

app = FastAPI(
    title="ChainTrace Compliance Engine",
    description="Supply-chain compliance rules, sequence enforcement and audit logging",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ============================================
# API ENDPOINTS
# ============================================

@app.get("/", tags=["Health"])
async def root():
    return {
        "service": "ChainTrace Compliance Engine",
        "version": "1.0.0",
        "status": "operational"
    }

@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Ledger integrity and cache occupancy."""
    integrity = app_state.ledger.verify_chain_integrity()
    cache_stats = app_state.cache.get_stats()
    return HealthResponse(
        status="healthy" if integrity else "degraded",
        version="1.0.0",
        ledger_entries=len(app_state.ledger),
        ledger_integrity=integrity,
        cache_entries=cache_stats['size'],
        cache_expired=cache_stats['expired_count']
    )

@app.post("/api/compliance/validate-action", response_model=ValidationResponse, tags=["Compliance"])
def validate_action(request: ValidateActionRequest):
    """
    Validate a supply-chain action.

    Compliance rejections return 200 with is_valid=false. Infrastructure
    faults (cache, lock, ledger) return 503 and nothing is committed.
    """
    result = app_state.engine.validate_action(
        ActionValidationRequest(
            action=request.action,
            product_id=request.product_id,
            actor=Actor(wallet_address=request.actor.wallet_address, role=request.actor.role),
            data=request.data
        )
    )
    return result.to_dict()

@app.get("/api/compliance/rules/{role}/{action}", tags=["Compliance"])
def get_rules(role: str, action: str):
    """Rules applying to a role/action pair; unknown pairs return an empty list."""
    rules = app_state.engine.load_compliance_rules(role, action)
    return {
        "role": role,
        "action": action,
        "rules": [rule.to_dict() for rule in rules]
    }

@app.get("/api/compliance/sequence/{product_id}", tags=["Compliance"])
def get_sequence(product_id: str):
    state = app_state.engine.get_sequence_state(product_id)
    if state is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No sequence state for product {product_id}"
        )
    return state.to_dict()

@app.get("/api/compliance/audit/{product_id}", tags=["Compliance"])
async def get_audit_trail(product_id: str):
    """Every recorded decision for a product, oldest first."""
    entries = app_state.ledger.entries_for(product_id)
    return {"product_id": product_id, "count": len(entries), "entries": entries}

@app.get("/metrics", tags=["Observability"])
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(metrics_registry),
        media_type=CONTENT_TYPE_LATEST
    )

# ============================================
# ERROR HANDLERS
# ============================================

@app.exception_handler(RequestValidationError)
async def malformed_request_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Malformed request to {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": "Malformed request", "errors": jsonable_errors(exc)}
    )

@app.exception_handler(InfrastructureFailure)
async def infrastructure_failure_handler(request: Request, exc: InfrastructureFailure):
    logger.error(f"Infrastructure failure on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": str(exc), "error": type(exc).__name__}
    )

def jsonable_errors(exc: RequestValidationError) -> List[Dict[str, Any]]:
    return [
        {"loc": [str(part) for part in error.get("loc", ())], "msg": error.get("msg", "")}
        for error in exc.errors()
    ]

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "ct_main_api:app",
        host="0.0.0.0",
        port=8000,
        log_level="info"
    )
