import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from apps.api.app.config import settings
from apps.api.app.db import engine, SessionLocal
from apps.api.app.errors import ReviewDeskError, InvalidInput, RateLimited, UnexpectedError
from apps.api.app.models import Base
from apps.api.app.sources import seed_sources
from apps.api.app.routes.connections import router as connections_router
from apps.api.app.routes.oauth import router as oauth_router
from apps.api.app.routes.reviews import router as reviews_router
from apps.api.app.routes.responses import router as responses_router
from apps.api.app.routes.ops import router as ops_router

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        added = seed_sources(db)
    if added:
        logger.info("Seeded %d review sources", added)
    app.state.sync_cooldowns = {}
    yield


app = FastAPI(title="Review Reply Desk API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.app_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ReviewDeskError)
async def review_desk_error_handler(request: Request, exc: ReviewDeskError):
    headers = None
    if isinstance(exc, RateLimited) and exc.retry_after is not None:
        headers = {"Retry-After": str(int(exc.retry_after))}
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.kind)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = {}
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        details[".".join(loc) or "request"] = err.get("msg", "invalid")
    err = InvalidInput(details=details)
    return JSONResponse(status_code=err.status_code, content=err.to_dict())


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    err = UnexpectedError()
    return JSONResponse(status_code=err.status_code, content=err.to_dict())


@app.get("/")
def root():
    return {"name": "Review Reply Desk API", "status": "ok", "docs": "/docs"}


app.include_router(connections_router)
app.include_router(oauth_router)
app.include_router(reviews_router)
app.include_router(responses_router)
app.include_router(ops_router)
