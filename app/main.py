from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.exception_handlers import http_exception_handler
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
import logging

# Import database components
from app.database.database import sync_engine, Base

# Import middleware
from app.common.middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware
from app.common.exceptions import EngineError

# Import routers
from app.modules.products.router import product_router
from app.modules.inventory.router import stock_router, movements_router
from app.modules.purchases.router import purchases_router
from app.modules.accounting.router import accounting_router

# Import models for table creation
import app.modules.sequences.models
import app.modules.products.models
import app.modules.purchases.models
import app.modules.accounting.models

from app.core.config import settings

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# FastAPI app
app = FastAPI(
    title="Purchase Lifecycle API",
    description="Purchase orders, goods receipts, supplier bills and returns kept numerically consistent",
    version="1.0.0",
    docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT != "production" else None
)

# Add middleware (order matters!)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestLoggingMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    logger.warning(f"{request.method} {request.url.path} rejected: {exc}")
    return await http_exception_handler(request, exc)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={"detail": {
            "error": "validation_error",
            "message": "Request body or parameters are invalid",
            "errors": jsonable_encoder(exc.errors()),
        }},
    )


# Include routers
app.include_router(product_router)
app.include_router(stock_router)
app.include_router(movements_router)
app.include_router(purchases_router)
app.include_router(accounting_router)

# Create database tables (only for development - use migrations in production)
if settings.ENVIRONMENT == "development":
    Base.metadata.create_all(bind=sync_engine)


@app.get("/")
async def read_root():
    return {
        "message": "Purchase Lifecycle API is running",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy", "environment": settings.ENVIRONMENT}


@app.on_event("startup")
async def startup_event():
    logger.info("Purchase Lifecycle API starting up...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug mode: {settings.DEBUG}")
    logger.info(f"Conflict retries: {settings.CONFLICT_MAX_RETRIES}")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Purchase Lifecycle API shutting down...")
