"""Sales Performance Admin API - Main Server"""
from fastapi import FastAPI, APIRouter, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware
import os
import logging
from pathlib import Path
from datetime import datetime, timezone

from errors import ServiceError
from insights.engine import build_engine
from integrations.monday_client import MondayAPIError
from routes import router as routes_router

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

INSIGHTS_CACHE_CAPACITY = int(os.environ.get('INSIGHTS_CACHE_CAPACITY', '256'))
INSIGHTS_CACHE_TTL_SECONDS = float(os.environ.get('INSIGHTS_CACHE_TTL_SECONDS', '300'))

app = FastAPI(title="Sales Performance Admin API")
api_router = APIRouter(prefix="/api")

# Built here so the engine exists even when startup events are not run
app.state.insight_engine = build_engine(INSIGHTS_CACHE_CAPACITY, INSIGHTS_CACHE_TTL_SECONDS)


# ============ Error Handlers ============

@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message} ({exc.details})")
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Validation error", "details": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(MondayAPIError)
async def monday_error_handler(request: Request, exc: MondayAPIError):
    logger.error(f"Monday.com call failed on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=502,
        content=jsonable_encoder({"error": str(exc), "details": exc.errors}),
    )


# ============ Health ============

@api_router.get("/")
async def root():
    return {"message": "Sales Performance Admin API", "version": "1.0.0"}


@api_router.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


# Include routers and add middleware
api_router.include_router(routes_router)
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup():
    engine = app.state.insight_engine
    logger.info(
        f"Insight engine ready (cache capacity {engine.cache.capacity}, ttl {engine.cache.default_ttl}s)"
    )


@app.on_event("shutdown")
async def shutdown():
    cache = app.state.insight_engine.cache
    logger.info(f"Clearing insight cache ({len(cache)} entries)")
    cache.clear()
