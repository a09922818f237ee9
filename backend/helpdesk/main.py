import uuid
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from helpdesk.config import Settings, settings as default_settings
from helpdesk.errors import HelpdeskError
from helpdesk.models_sqlalchemy import build_engine, build_session_factory
from helpdesk.routers import auth, chat, help_requests
from helpdesk.services.notifications import Notifier
from helpdesk.services.shopify import ShopifyClient
from helpdesk.services.storage import SupabaseObjectStorage
from helpdesk.utils.logger import logger
from helpdesk.utils.rate_limit import RateLimiter


def _build_shopify(settings: Settings) -> Optional[ShopifyClient]:
    if not settings.SHOPIFY_SHOP_DOMAIN or not settings.SHOPIFY_ACCESS_TOKEN:
        logger.warning("SHOPIFY_SHOP_DOMAIN or SHOPIFY_ACCESS_TOKEN not set. Provider actions are disabled.")
        return None
    return ShopifyClient(
        settings.SHOPIFY_SHOP_DOMAIN,
        settings.SHOPIFY_API_VERSION,
        settings.SHOPIFY_ACCESS_TOKEN,
        timeout=settings.SHOPIFY_TIMEOUT_SECONDS,
    )


def _build_rate_limiters(settings: Settings) -> dict:
    window = settings.RATE_LIMIT_WINDOW_SECONDS
    return {
        "help_requests": RateLimiter(settings.RATE_LIMIT_HELP_REQUESTS_MAX, window),
        "create_request": RateLimiter(settings.RATE_LIMIT_CREATE_REQUEST_MAX, window),
        "chat": RateLimiter(settings.RATE_LIMIT_CHAT_MAX, window),
    }


def create_app(
    settings: Optional[Settings] = None,
    *,
    engine: Optional[Engine] = None,
    session_factory: Optional[sessionmaker] = None,
    shopify: Optional[ShopifyClient] = None,
    storage: Optional[SupabaseObjectStorage] = None,
    notifier: Optional[Notifier] = None,
    rate_limiters: Optional[dict] = None,
) -> FastAPI:
    """Build the API with its clients attached to ``app.state``.

    Anything not passed in is constructed from ``settings``.
    """
    settings = settings or default_settings
    app = FastAPI(title="Help Centre API", version="1.0.0")

    if session_factory is None:
        engine = engine or build_engine(settings)
        session_factory = build_session_factory(engine)

    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.shopify = shopify if shopify is not None else _build_shopify(settings)
    app.state.storage = storage or SupabaseObjectStorage.from_settings(settings)
    app.state.notifier = notifier or Notifier.from_settings(settings)
    app.state.rate_limiters = rate_limiters if rate_limiters is not None else _build_rate_limiters(settings)

    origins = [o.strip() for o in settings.ALLOWED_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
        max_age=3600,
    )

    # Request logging middleware with request ID
    @app.middleware("http")
    async def request_logger(request: Request, call_next):
        rid = uuid.uuid4().hex[:8]
        request.state.rid = rid
        logger.info("→ %s %s rid=%s", request.method, request.url.path, rid)
        try:
            resp = await call_next(request)
        except Exception as e:
            logger.exception("Unhandled error rid=%s: %s", rid, str(e))
            resp = JSONResponse({"error": "Internal server error", "code": "internal_error", "rid": rid}, status_code=500)
        logger.info("← %s status=%s rid=%s", request.url.path, resp.status_code, rid)
        resp.headers["X-Request-ID"] = rid
        return resp

    @app.exception_handler(HelpdeskError)
    async def helpdesk_error_handler(request: Request, exc: HelpdeskError):
        status_code = exc.http_status
        if status_code >= 500:
            logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
        return JSONResponse(exc.to_dict(), status_code=status_code, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            {
                "error": "Invalid request",
                "code": "validation_error",
                "details": jsonable_encoder(exc.errors(), exclude={"ctx", "url", "input"}),
            },
            status_code=400,
        )

    app.include_router(auth.router)
    app.include_router(help_requests.router)
    app.include_router(chat.router)

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok"}

    @app.get("/healthz/db")
    def healthz_db(request: Request):
        try:
            with request.app.state.session_factory() as db:
                db.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.error("Database health check failed: %s", e)
            return JSONResponse({"status": "error", "database": "unreachable"}, status_code=503)
        return {"status": "ok", "database": "ok"}

    @app.on_event("shutdown")
    async def shutdown_event():
        await app.state.notifier.drain()
        if app.state.shopify is not None:
            await app.state.shopify.aclose()
        logger.info("Help Centre API shut down")

    return app


app = create_app()
