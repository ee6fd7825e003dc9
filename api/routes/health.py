"""Health check endpoint."""

from fastapi import APIRouter

from ruleflow import __version__
from ruleflow.errors import ConfigurationError
from ruleflow.runtime.executor import ExecutionConfig

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": __version__,
        "service": "ruleflow-api"
    }


@router.get("/health/ready")
async def readiness_check():
    """Readiness check endpoint: the runtime configuration must load from the environment."""
    try:
        ExecutionConfig.from_env()
        config_ok = True
    except ConfigurationError:
        config_ok = False
    return {
        "ready": config_ok,
        "checks": {
            "runtime": True,
            "config": config_ok,
        }
    }
