from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.trustedhost import TrustedHostMiddleware

from taskboard.config import settings
from taskboard.db import SessionLocal
from taskboard.errors import AppError
from taskboard.notifications.events import Notifier
from taskboard.notifications.service import Mailer
from taskboard.routers.auth import router as auth_router
from taskboard.routers.boards import router as boards_router
from taskboard.routers.cards import router as cards_router
from taskboard.routers.users import router as users_router
from taskboard.seed import bootstrap

logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Taskboard API", version=settings.app_version)

app.state.mailer = Mailer(SessionLocal)
app.state.notifier = Notifier(app.state.mailer)


def _error_response(status_code: int, detail: dict, headers: dict[str, str] | None = None) -> JSONResponse:
  return JSONResponse(status_code=status_code, content={"detail": detail}, headers=headers)


@app.exception_handler(AppError)
async def _app_error_handler(_: Request, exc: AppError) -> JSONResponse:
  return _error_response(exc.status_code, exc.to_detail(), exc.headers)


@app.exception_handler(RequestValidationError)
async def _validation_error_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
  fields = [{"loc": [str(p) for p in e.get("loc", ())], "msg": str(e.get("msg", ""))} for e in exc.errors()]
  return _error_response(400, {"code": "ValidationError", "message": "Invalid input", "fields": fields})


@app.exception_handler(StarletteHTTPException)
async def _http_error_handler(_: Request, exc: StarletteHTTPException) -> JSONResponse:
  code = "NotFound" if exc.status_code == 404 else "HttpError"
  return _error_response(exc.status_code, {"code": code, "message": str(exc.detail)}, getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
  logger.exception("unhandled error on %s %s", request.method, request.url.path)
  return _error_response(500, {"code": "Internal", "message": "Internal error"})


app.add_middleware(
  CORSMiddleware,
  allow_origins=settings.cors_origin_list(),
  allow_origin_regex=settings.cors_origin_regex,
  allow_credentials=True,
  allow_methods=["*"],
  allow_headers=["*"],
)
app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.trusted_host_list())

app.include_router(auth_router)
app.include_router(users_router)
app.include_router(boards_router)
app.include_router(cards_router)


@app.middleware("http")
async def _security_headers_middleware(request, call_next):
  response = await call_next(request)
  response.headers.setdefault("X-Content-Type-Options", "nosniff")
  response.headers.setdefault("X-Frame-Options", "DENY")
  response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
  response.headers.setdefault("Cache-Control", "no-store")
  return response


@app.get("/health")
async def health() -> dict:
  return {"ok": True}


@app.get("/version")
async def version() -> dict:
  return {"version": settings.app_version}


@app.on_event("startup")
async def _startup() -> None:
  if settings.is_test_db():
    return
  if not settings.app_secret or settings.app_secret.strip().lower() in {"dev-secret-change-me", "replace_with_strong_random_secret"}:
    raise RuntimeError("APP_SECRET is required and must not be a placeholder")
  if not settings.fernet_key or settings.fernet_key.strip() in {"AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA=", "REPLACE_WITH_FERNET_KEY"}:
    raise RuntimeError("FERNET_KEY is required and must not be a placeholder")
  async with SessionLocal() as db:
    generated = await bootstrap(db)
  if generated:
    logger.warning("system admin created with generated password %s; change it on first login", generated)


@app.on_event("shutdown")
async def _shutdown() -> None:
  await app.state.notifier.drain()
