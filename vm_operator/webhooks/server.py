"""
VM Operator admission webhook server - FastAPI application entry point

Serves the validating webhooks for PersistentVolumeClaims and
VirtualMachines plus the storage quota check. Validators only read from
the store; they never call into the reconciler.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from vm_operator import __version__
from vm_operator.config import Settings, settings
from vm_operator.store import RestStore
from vm_operator.webhooks.registry import build_validators
from vm_operator.webhooks.routers import health, validation
from vm_operator.webhooks.storagequota import StorageQuotaValidator

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    state = app.state
    logger.info(f"VM Operator webhook server v{__version__} starting...")
    logger.info(f"Validators: {sorted(state.validators)}")
    logger.info(f"Timeout: {state.timeout}s, failure policy: {state.failure_policy}")
    yield
    logger.info("Webhook server shutting down...")


def create_app(store=None, config: Optional[Settings] = None) -> FastAPI:
    """Build the app around ``store``; defaults to the REST store from settings."""
    config = config or settings
    if store is None:
        store = RestStore(config.store_url, config.store_token, config.verify_ssl, config.store_timeout_seconds)

    app = FastAPI(
        title="VM Operator Webhooks",
        description="Validating admission webhooks for VM Operator resources",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.store = store
    app.state.validators = build_validators(store, config)
    app.state.storage_quota = StorageQuotaValidator(store)
    app.state.timeout = config.webhook_timeout_seconds
    app.state.failure_policy = config.webhook_failure_policy

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "error": str(exc)}
        )

    app.include_router(health.router)
    app.include_router(validation.router)
    return app


app = create_app()


def run():
    """Run the webhook server with uvicorn."""
    import uvicorn

    ssl_enabled = os.path.exists(settings.webhook_ssl_cert) and os.path.exists(settings.webhook_ssl_key)
    if ssl_enabled:
        logger.info("SSL enabled with certificate")
    else:
        logger.warning("Serving certificate/key not found - starting without SSL")

    uvicorn.run(
        "vm_operator.webhooks.server:app",
        host=settings.webhook_host,
        port=settings.webhook_port,
        ssl_keyfile=settings.webhook_ssl_key if ssl_enabled else None,
        ssl_certfile=settings.webhook_ssl_cert if ssl_enabled else None,
        log_level=settings.log_level.lower()
    )


if __name__ == "__main__":
    run()
