import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

import config
import database
from auth import router as auth_router
from bugs import router as bugs_router
from dashboard import router as dashboard_router
from errors import BugTrackerError
from github_integration import router as github_router
from logging_config import setup_logging
from projects import router as projects_router
from standardizer import error_response, success_response
from users import router as users_router

setup_logging(level=getattr(logging, config.LOG_LEVEL, logging.INFO))
logger = logging.getLogger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        try:
            database.ensure_indexes(database.db)
            logger.info("Indexes ensured on %s", database.db.name)
        except PyMongoError as e:
            logger.error("Could not ensure indexes: %s", e)
    else:
        logger.warning("DATABASE_URL is not set; requests needing the database will fail with 503")
    yield
    if database.client is not None:
        database.client.close()


# -----------------------------
# App & Middleware
# -----------------------------
app = FastAPI(title="Bug Tracker API", version="1.0.0", lifespan=lifespan)


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_host = request.client.host if request.client else "unknown"
        logger.info(f"Incoming: {request.method} {request.url.path} from {client_host}")

        try:
            response = await call_next(request)
            process_time = (time.time() - start_time) * 1000
            logger.info(
                f"Outgoing: {request.method} {request.url.path} - "
                f"Status: {response.status_code} - "
                f"Time: {process_time:.2f}ms"
            )
            return response
        except Exception as e:
            logger.error(f"Request failed: {request.method} {request.url.path} - Error: {str(e)}")
            raise


app.add_middleware(LoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -----------------------------
# Error envelopes
# -----------------------------
@app.exception_handler(BugTrackerError)
async def bug_tracker_error_handler(request: Request, exc: BugTrackerError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(error_response(exc.message, exc.details, exc.status_code)),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ())[1:]), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content=jsonable_encoder(error_response("Validation failed", errors, 400)))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content=error_response(str(exc.detail), None, exc.status_code))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    details = str(exc) if config.is_development() else None
    return JSONResponse(status_code=500, content=error_response("Internal server error", details, 500))


# -----------------------------
# Root & Health
# -----------------------------
@app.get("/")
def read_root():
    return success_response({"name": "Bug Tracker API", "version": app.version}, "Bug Tracker API is running")


@app.get("/api/health")
def health_check(db: Database = Depends(database.get_db)):
    try:
        db.command("ping")
    except PyMongoError as e:
        logger.error("Database ping failed: %s", e)
        return JSONResponse(status_code=503, content=error_response("Database unreachable", None, 503))
    return success_response({"status": "ok", "database": "connected"}, "Service is healthy")


app.include_router(auth_router)
app.include_router(users_router)
app.include_router(projects_router)
app.include_router(bugs_router)
app.include_router(github_router)
app.include_router(dashboard_router)


if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=config.PORT)
