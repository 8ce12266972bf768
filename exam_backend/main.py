"""
exam_backend/main.py
Application entry point

    uvicorn exam_backend.main:app --reload
    gunicorn -c deploy/gunicorn.conf.py exam_backend.main:app
"""
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.exceptions import HTTPException as StarletteHTTPException

from exam_backend import __version__, config
from exam_backend.database import close_db, execute_query, get_db, init_db
from exam_backend.errors import APIError, ErrorCode, ERROR_MAPPING, RateLimitError, new_log_id
from exam_backend.realtime import ws_server
from exam_backend.realtime.notification_hub import NotificationHub
from exam_backend.routes import admin, auth, education, questions, reports, students
from exam_backend.routes.auth import limiter
from exam_backend.security.login_guard import LoginAttemptTracker, TokenBlocklist
from exam_backend.services.anti_cheat_service import AntiCheatService
from exam_backend.services.cache_service import CacheService
from exam_backend.services.ml_service import MLService

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()]
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting application...")
    try:
        await init_db()
        logger.info("Database connected successfully")
    except Exception as e:
        logger.error(f"Failed to connect to database: {str(e)}")
        raise

    yield

    logger.info("Shutting down application...")
    await app.state.cache.close()
    try:
        await close_db()
        logger.info("Database connection closed")
    except Exception as e:
        logger.error(f"Error closing database connection: {str(e)}")


app = FastAPI(
    title="Exam Platform API",
    description="Exams, question bank, evaluation and reporting backend",
    version=__version__,
    docs_url="/api-docs",
    redoc_url=None,
    lifespan=lifespan
)

# Process-wide state, one instance each
app.state.login_guard = LoginAttemptTracker()
app.state.token_blocklist = TokenBlocklist()
app.state.notification_hub = NotificationHub()
app.state.cache = CacheService()
app.state.anti_cheat = AntiCheatService()
app.state.ml = MLService()

app.state.limiter = limiter
logger.info(f"Rate limiter configured (enabled={config.RATE_LIMIT_ENABLED})")

origins = [o.strip() for o in config.CORS_ORIGIN.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials="*" not in origins,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")

    error_details = []
    for error in exc.errors():
        error_details.append({
            "loc": list(error.get("loc", ())),
            "msg": error.get("msg"),
            "type": error.get("type")
        })

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "success": False,
            "error": "Validation Error",
            "message": "Request validation failed",
            "code": ErrorCode.VALIDATION_ERROR,
            "details": error_details
        }
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    logger.warning(f"Rate limit exceeded on {request.url.path}: {exc.detail}")
    return RateLimitError(f"Rate limit exceeded: {exc.detail}").to_response()


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning(f"HTTP exception on {request.url.path}: {exc.detail}")

    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content=exc.detail)

    error, code = ERROR_MAPPING.get(exc.status_code, ("Error", ErrorCode.INVALID_INPUT))
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": error,
            "message": str(exc.detail),
            "code": code
        }
    )


@app.exception_handler(APIError)
async def api_error_handler(request: Request, exc: APIError):
    logger.warning(f"API error on {request.url.path}: {exc.code} - {exc.message}")
    return exc.to_response()


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    log_id = new_log_id()
    logger.error(
        f"[{log_id}] Unhandled exception on {request.url.path}: {type(exc).__name__}: {str(exc)}",
        exc_info=exc,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": "Internal Error",
            "message": "An unexpected error occurred. Please try again later.",
            "code": ErrorCode.INTERNAL_ERROR,
            "details": {"log_id": log_id}
        }
    )


@app.get("/health", tags=["Health"])
async def health_check(db: AsyncSession = Depends(get_db)):
    try:
        rows = await execute_query(db, "SELECT :ok AS ok", {"ok": 1})
        database = "ok" if rows and rows[0]["ok"] == 1 else "unavailable"
    except SQLAlchemyError as e:
        logger.error(f"Health check database query failed: {e}")
        database = "unavailable"
    return {
        "status": "healthy" if database == "ok" else "degraded",
        "database": database,
        "environment": config.ENVIRONMENT,
        "version": __version__
    }


app.include_router(auth.router, prefix="/api")
app.include_router(education.router, prefix="/api")
app.include_router(admin.router, prefix="/api")
app.include_router(reports.router, prefix="/api")
app.include_router(questions.router, prefix="/api")
app.include_router(students.router, prefix="/api")
app.include_router(ws_server.router)
