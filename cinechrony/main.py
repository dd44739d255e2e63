import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from . import tmdb
from .auth import verify_csrf
from .database import init_db, close_db
from .letterboxd import ParseError
from .ratelimit import limiter
from .routes_auth import router as auth_router
from .routes_cron import router as cron_router
from .routes_import import router as import_router
from .routes_lists import router as lists_router

logger = logging.getLogger(__name__)

CSRF_EXEMPT_PATHS = ("/api/auth/login", "/api/auth/signup", "/api/auth/logout")


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield
    await tmdb.close_client()
    await close_db()


app = FastAPI(lifespan=lifespan)
app.state.limiter = limiter


# Rate limit error handler
@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(status_code=429, content={"error": "Too many requests. Please try again later."})


# Import failures surface to the client as {"error": message}
@app.exception_handler(ParseError)
async def parse_error_handler(request: Request, exc: ParseError):
    return JSONResponse(status_code=400, content={"error": str(exc)})


# A missing TMDB key fails the whole request instead of leaving every row unmatched
@app.exception_handler(tmdb.TMDBConfigError)
async def tmdb_config_error_handler(request: Request, exc: tmdb.TMDBConfigError):
    logger.error("Movie search is not configured: %s", exc)
    return JSONResponse(status_code=503, content={"error": "Movie search is unavailable right now. Please try again later."})


# Security headers middleware
@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


# CSRF middleware for state-changing requests
@app.middleware("http")
async def csrf_middleware(request: Request, call_next):
    if request.method in ("POST", "PUT", "PATCH", "DELETE"):
        # Login/signup don't have a token yet; cron callers authenticate with a bearer token.
        if request.url.path not in CSRF_EXEMPT_PATHS and request.cookies.get("access_token"):
            try:
                verify_csrf(request)
            except HTTPException as exc:
                return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})
    return await call_next(request)


# CORS
ALLOWED_ORIGINS = os.environ.get("CORS_ORIGINS", "").split(",")
ALLOWED_ORIGINS = [o.strip() for o in ALLOWED_ORIGINS if o.strip()]
if ALLOWED_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "X-CSRF-Token"],
    )


app.include_router(auth_router)
app.include_router(import_router)
app.include_router(lists_router)
app.include_router(cron_router)


@app.get("/api/health")
async def health():
    return {"ok": True}
