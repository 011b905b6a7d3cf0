import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .core.config import get_settings
from .core.db import Base, get_engine, get_sessionmaker
from .core.responses import ErrorCodes, code_for_status, error_response
from .public_booking import router as public_booking_router
from .rate_limiter import RateLimitHeadersMiddleware
from .routes_scoped import router as scoped_router
from .seed import seed_initial_data


settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    if settings.uses_dev_review_secret:
        logger.warning("[REVIEW] REVIEW_LINK_SECRET is not set; review links use the development secret")

    if settings.create_schema_on_startup:
        async with get_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created successfully")

    if settings.seed_demo_data:
        async with get_sessionmaker()() as session:
            shop = await seed_initial_data(session)
        logger.info(f"Demo data ready for shop {shop.id}")

    yield
    logger.info("Application shutting down...")
    await get_engine().dispose()


app = FastAPI(title="Shopbook Scheduling Backend", lifespan=lifespan)

app.add_middleware(RateLimitHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed requests are a 400 with the standard error body, never a 422."""
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        message = str(error.get("msg", "Invalid value")).removeprefix("Value error, ")
        problems.append(f"{location}: {message}" if location else message)

    logger.info(f"Validation error for {request.url.path}: {problems}")
    return JSONResponse(
        status_code=400,
        content=error_response(ErrorCodes.INVALID_INPUT, "; ".join(problems) or "Invalid request."),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(code_for_status(exc.status_code), str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


app.include_router(public_booking_router)
app.include_router(scoped_router)


@app.get("/health")
async def healthcheck():
    return {"ok": True}
