"""
School Vendor Backend - FastAPI Application

Order lifecycle, stock reservation and multi-provider payment processing
for the storefront and admin dashboard.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging

from .config import settings
from .exceptions import StoreError
from .db.init_db import initialize_database
from .services.scheduler import start_scheduler, shutdown_scheduler
from .api.orders import router as orders_router
from .api.payments import router as payments_router
from .api.products import router as products_router
from .api.admin import router as admin_router


# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events:
    - Startup: Initialize database, start the expiry sweep
    - Shutdown: Stop the scheduler
    """
    logger.info("Starting School Vendor backend server...")
    logger.info(f"Demo mode: {settings.demo_mode}")

    try:
        await initialize_database()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    try:
        start_scheduler()
        logger.info("APScheduler started for transaction expiry sweep")
    except Exception as e:
        logger.error(f"Failed to start scheduler: {e}")
        if not settings.demo_mode:
            raise
        logger.warning("Continuing without scheduler in demo mode")

    logger.info("Server startup complete")

    yield

    logger.info("Shutting down School Vendor backend server...")
    try:
        shutdown_scheduler(wait=True)
        logger.info("Scheduler shutdown complete")
    except Exception as e:
        logger.error(f"Error during scheduler shutdown: {e}")


app = FastAPI(
    title="School Vendor API",
    description="Order and payment backend for a school supply vendor",
    version="0.1.0",
    lifespan=lifespan,
)


app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    """
    Handle core errors with the standardized response format.

    Status code comes from the exception class (400, 402, 403, 404, 500).
    """
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(f"Store error: {exc.error_code} - {exc.message}", extra={"details": exc.details})

    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    """
    Handle validation errors with user-friendly messages.

    Used for input validation failures not caught by Pydantic.
    """
    logger.warning(f"Validation error: {str(exc)}")

    return JSONResponse(
        status_code=400,
        content={
            "error_code": "store:validation_failed",
            "message": str(exc),
            "details": {}
        }
    )


@app.exception_handler(Exception)
async def general_error_handler(request: Request, exc: Exception):
    """
    Catch-all handler for unexpected errors.

    Logs full exception for debugging but returns generic message to client.
    """
    logger.error(f"Unexpected error: {str(exc)}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={
            "error_code": "internal_error",
            "message": "An unexpected error occurred",
            "details": {"error_type": type(exc).__name__} if settings.demo_mode else {}
        }
    )


@app.get("/api/health")
async def health_check():
    """
    Health check endpoint for monitoring and load balancers.
    """
    return {
        "status": "healthy",
        "version": "0.1.0",
        "demo_mode": settings.demo_mode,
    }


app.include_router(orders_router, prefix="/api/orders", tags=["Orders"])
app.include_router(payments_router, prefix="/api/payments", tags=["Payments"])
app.include_router(products_router, prefix="/api/products", tags=["Products"])
app.include_router(admin_router, prefix="/api/admin/orders", tags=["Admin"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "schoolvendor.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.demo_mode,
        log_level=settings.log_level.lower()
    )
