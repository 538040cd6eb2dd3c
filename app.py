import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from billing import BillingConfig, StripeGateway, build_gateway, load_billing_config, seed_plan_catalogue
from billing.exceptions import (
    BillingError,
    BillingValidationError,
    BusinessNotFoundError,
    PlanAlreadyExistsError,
    PlanInUseError,
    PlanNotFoundError,
    RemoteBillingError,
    SubscriptionNotFoundError,
    WebhookPayloadError,
    WebhookSignatureError,
)
from models import Base
from routers.billing_admin import router as billing_admin_router
from routers.webhooks import router as webhooks_router

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

logger = logging.getLogger(__name__)

# Most specific first: the first matching class decides status and error type.
ERROR_RESPONSES: List[Tuple[Type[BillingError], int, str]] = [
    (WebhookSignatureError, status.HTTP_400_BAD_REQUEST, "invalid_request"),
    (WebhookPayloadError, status.HTTP_400_BAD_REQUEST, "invalid_request"),
    (BillingValidationError, 422, "validation_error"),
    (PlanNotFoundError, status.HTTP_404_NOT_FOUND, "not_found"),
    (BusinessNotFoundError, status.HTTP_404_NOT_FOUND, "not_found"),
    (SubscriptionNotFoundError, status.HTTP_404_NOT_FOUND, "not_found"),
    (PlanAlreadyExistsError, status.HTTP_409_CONFLICT, "conflict"),
    (PlanInUseError, status.HTTP_409_CONFLICT, "conflict"),
    (RemoteBillingError, status.HTTP_502_BAD_GATEWAY, "remote_error"),
]


def _error_body(error_type: str, message: str, code: Optional[str] = None) -> Dict[str, Any]:
    return {"error": {"type": error_type, "message": message, "code": code}}


async def billing_error_handler(request: Request, exc: BillingError):
    for error_class, status_code, error_type in ERROR_RESPONSES:
        if isinstance(exc, error_class):
            break
    else:
        status_code, error_type = status.HTTP_400_BAD_REQUEST, "billing_error"

    code = exc.code if isinstance(exc, RemoteBillingError) else None
    if status_code >= 500:
        logger.warning("%s %s failed: %s (code=%s)", request.method, request.url.path, exc, code)
    return JSONResponse(status_code=status_code, content=_error_body(error_type, str(exc), code))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()) if item != "body")
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return JSONResponse(
        status_code=422,
        content=_error_body("validation_error", "; ".join(parts) or "Invalid request."),
    )


def _initialise_database(session_factory: Callable[[], Session]) -> None:
    with session_factory() as session:
        Base.metadata.create_all(bind=session.get_bind())
        seed_plan_catalogue(session)


def create_app(
    *,
    config: Optional[BillingConfig] = None,
    gateway: Optional[StripeGateway] = None,
    session_factory: Optional[Callable[[], Session]] = None,
    initialise_database: bool = True,
) -> FastAPI:
    """Build the billing API.

    Configuration is loaded eagerly so missing Stripe secrets stop the process
    at startup instead of failing the first request that needs them.
    """
    config = config or load_billing_config()
    gateway = gateway or build_gateway(config)
    if session_factory is None:
        from db import SessionLocal

        session_factory = SessionLocal

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if initialise_database:
            try:
                _initialise_database(session_factory)
                logger.info("Database initialized and plan catalogue seeded")
            except Exception as exc:  # noqa: BLE001
                logger.exception("Database initialization failed: %s", exc)
        yield

    app = FastAPI(title="Business Billing Sync", lifespan=lifespan)
    app.state.billing_config = config
    app.state.stripe_gateway = gateway
    app.state.session_factory = session_factory

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(BillingError, billing_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    app.include_router(webhooks_router)
    app.include_router(billing_admin_router)

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok"}

    return app


app = create_app()
