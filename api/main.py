"""
Ruleflow API - FastAPI Application

Run with: uvicorn api.main:app --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ruleflow import __version__
from ruleflow.errors import AccessDeniedError, ConfigurationError, ExecutionBlockedError, RuleflowError
from api.routes.step import router as step_router
from api.routes.validate import router as validate_router
from api.routes.rules import router as rules_router
from api.routes.replay import router as replay_router
from api.routes.health import router as health_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Ruleflow API starting...")
    yield
    logger.info("Ruleflow API shutting down...")


app = FastAPI(
    title="Ruleflow API",
    description="Deterministic flow, rules and API orchestration runtime",
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health_router, tags=["Health"])
app.include_router(step_router, prefix="/api/v1", tags=["Execution"])
app.include_router(validate_router, prefix="/api/v1", tags=["Validation"])
app.include_router(rules_router, prefix="/api/v1", tags=["Rules"])
app.include_router(replay_router, prefix="/api/v1", tags=["Replay"])


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    """Invalid flows, rule sets, mappings or contexts answer 422."""
    logger.info(f"{request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=422, content={"detail": str(exc), "path": exc.path})


@app.exception_handler(AccessDeniedError)
async def access_denied_handler(request: Request, exc: AccessDeniedError):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(ExecutionBlockedError)
async def execution_blocked_handler(request: Request, exc: ExecutionBlockedError):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(RuleflowError)
async def runtime_error_handler(request: Request, exc: RuleflowError):
    logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=500, content={"detail": str(exc)})


@app.get("/")
async def root():
    """API root endpoint."""
    return {
        "name": "Ruleflow API",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
