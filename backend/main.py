import logging
from fastapi import FastAPI, Request
from fastapi.exceptions import HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

from config import get_settings

# Import API routers
from api.accounts import router as accounts_router
from api.auth import router as auth_router

# Import database
from models.database import engine, Base
from services.ghl_service import GHLAPIError

settings = get_settings()

# Set up lifespan events
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create tables if they don't exist
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created/verified")
    logger.info("Application startup complete")

    yield

    # Cleanup on shutdown
    logger.info("Application shutdown")

# Create FastAPI app
app = FastAPI(
    title="GHL Account Provisioning API",
    description="Provisions GoHighLevel sub-accounts with progress streamed over SSE",
    version="1.0.0",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "x-sso-session"],
)


# Centralized error handling
def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    logger.error(f"Request to {request.url.path} failed: {exc.status_code} {exc.detail}")
    return _error_response(exc.status_code, str(exc.detail))


@app.exception_handler(GHLAPIError)
async def ghl_exception_handler(request: Request, exc: GHLAPIError):
    logger.error(f"GHL error on {request.url.path}: {exc.message}")
    return _error_response(502, exc.message)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.url.path}")
    return _error_response(500, str(exc) or "An unexpected error occurred.")


# Include routers
app.include_router(accounts_router, tags=["Account Provisioning"])
app.include_router(auth_router, prefix="/api", tags=["Authentication"])

# Root endpoint
@app.get("/", tags=["Health Check"])
async def root():
    return {
        "status": "online",
        "api_version": "1.0.0",
        "message": "GHL Account Provisioning API is running"
    }

# Health check endpoint
@app.get("/health", tags=["Health Check"])
async def health_check():
    return {"status": "healthy"}

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=settings.api_port, reload=settings.debug)
