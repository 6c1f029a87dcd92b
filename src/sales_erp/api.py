"""HTTP boundary for the sales backend.

:func:`create_app` builds a FastAPI application around a
:class:`~sales_erp.runtime.RuntimeContext`. Routers stay thin: they validate
the request body with pydantic, call one service method and wrap the result
in the response envelope. This is also the only place where errors are
rendered; every exception ends up as
``{statusCode, status: "ERROR", message, metadata?}``.
"""

from contextlib import asynccontextmanager
from dataclasses import asdict
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Optional, Set, Type

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, model_validator
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import errors, log
from .constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, ResponseStatus
from .providers import IdentityProvider, call_provider
from .ratelimit import FixedWindowRateLimiter
from .records import codec_for, serialize_bill
from .runtime import RuntimeContext, load_runtime_context
from .sales import SaleLineRequest, SaleRequest, SaleResult
from .settings import RateLimitSettings
from .services import CrudService, ReadOnlyService


EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

ADMIN_ROLE = "admin"
ROLE_CLAIM = "role"


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class RequestModel(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class ProductCreate(RequestModel):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    price: Decimal = Field(ge=0, max_digits=10, decimal_places=2)
    available_quantity: int = Field(default=0, ge=0)


class ProductUpdate(RequestModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    available_quantity: Optional[int] = Field(default=None, ge=0)


class CustomerCreate(RequestModel):
    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    first_name: str = Field(min_length=1, max_length=120)
    last_name: str = Field(min_length=1, max_length=120)
    address: Optional[str] = Field(default=None, max_length=500)
    phone_number: Optional[str] = Field(default=None, max_length=20)


class CustomerUpdate(RequestModel):
    email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN, max_length=255)
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    address: Optional[str] = Field(default=None, max_length=500)
    phone_number: Optional[str] = Field(default=None, max_length=20)


class SaleLineIn(RequestModel):
    product_id: int = Field(ge=1)
    quantity: int = Field(ge=1)
    sale_price: Decimal = Field(ge=0, max_digits=10, decimal_places=2)


class SaleIn(RequestModel):
    """Either ``customer_id`` or a walk-in ``customer`` plus the lines."""

    customer_id: Optional[int] = Field(default=None, ge=1)
    customer: Optional[CustomerCreate] = None
    lines: List[SaleLineIn] = Field(min_length=1)

    @model_validator(mode="after")
    def _one_customer_reference(self) -> "SaleIn":
        if (self.customer_id is None) == (self.customer is None):
            raise ValueError("Provide exactly one of customer_id or customer")
        return self


class LoginIn(RequestModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class RegisterIn(LoginIn):
    email: str = Field(pattern=EMAIL_PATTERN)


class ConfirmIn(RequestModel):
    username: str = Field(min_length=1)
    code: str = Field(min_length=1)


class RefreshIn(RequestModel):
    username: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)


class UsernameIn(RequestModel):
    username: str = Field(min_length=1)


class PasswordResetIn(RequestModel):
    username: str = Field(min_length=1)
    code: str = Field(min_length=1)
    new_password: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Envelopes and dependencies
# ---------------------------------------------------------------------------


def respond(data: Any, *, message: str, status_code: int = 200) -> JSONResponse:
    """Wrap ``data`` in the success envelope."""

    status = ResponseStatus.CREATED if status_code == 201 else ResponseStatus.OK
    body = {"statusCode": status_code, "status": status.value, "message": message, "data": data}
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def error_response(error: BaseException) -> JSONResponse:
    status_code, body = errors.error_envelope(error)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def get_runtime(request: Request) -> RuntimeContext:
    return request.app.state.runtime


def _identity(runtime: RuntimeContext) -> IdentityProvider:
    if runtime.identity is None:
        raise errors.ApplicationError("Identity provider is not configured", status_code=503)
    return runtime.identity


def bearer_token(request: Request) -> str:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise errors.AuthError("Missing bearer token")
    return token.strip()


async def require_identity(request: Request, runtime: RuntimeContext = Depends(get_runtime)) -> Optional[Mapping[str, Any]]:
    """Validate the bearer token when an identity provider is configured."""

    if runtime.identity is None:
        return None
    token = bearer_token(request)
    identity = runtime.identity
    return await call_provider(
        lambda: identity.verify_token(token),
        default_message="Invalid or expired token",
        default_status=401,
    )


def claimed_roles(claims: Mapping[str, Any]) -> Set[str]:
    """Read the caller's roles from a single role string or a list of them."""

    value = claims.get(ROLE_CLAIM)
    if value is None:
        return set()
    if isinstance(value, str):
        return {value}
    return {str(role) for role in value}


def require_role(role: str) -> Callable[..., Awaitable[Optional[Mapping[str, Any]]]]:
    """Build a dependency admitting only callers whose token carries ``role``.

    Without an identity provider there are no tokens to inspect and every
    caller is admitted, matching :func:`require_identity`.
    """

    async def check_role(
        request: Request,
        claims: Optional[Mapping[str, Any]] = Depends(require_identity),
    ) -> Optional[Mapping[str, Any]]:
        if claims is None:
            return None
        if role not in claimed_roles(claims):
            log.warning("Access denied on %s %s: '%s' role required", request.method, request.url.path, role)
            raise errors.AuthError("Forbidden: you don't have permission")
        return claims

    return check_role


def serialize_sale_result(result: SaleResult) -> Dict[str, Any]:
    return {
        "bill": serialize_bill(result.bill),
        "receipt_location": result.receipt_location,
        "delivered": result.delivered,
        "warnings": [asdict(warning) for warning in result.warnings],
    }


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------


def _register_reads(
    router: APIRouter,
    select: Callable[[RuntimeContext], ReadOnlyService],
    label: str,
) -> None:
    """Attach list, paginated and by-id routes to ``router``."""

    @router.get("")
    async def find_all(runtime: RuntimeContext = Depends(get_runtime)):
        service = select(runtime)
        serialize = codec_for(service.kind).serialize
        records = await service.find_all()
        return respond([serialize(record) for record in records], message=f"{label} list retrieved")

    @router.get("/paginated")
    async def find_paginated(
        page: int = Query(1, ge=1),
        per_page: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
        runtime: RuntimeContext = Depends(get_runtime),
    ):
        service = select(runtime)
        serialize = codec_for(service.kind).serialize
        result = await service.find_paginated((page - 1) * per_page, per_page)
        return respond(
            {
                "items": [serialize(record) for record in result.data],
                "count": result.count,
                "page": page,
                "per_page": per_page,
            },
            message=f"{label} page retrieved",
        )

    @router.get("/{entity_id}")
    async def find_by_id(entity_id: int, runtime: RuntimeContext = Depends(get_runtime)):
        service = select(runtime)
        record = await service.find_by_id(entity_id)
        if record is None:
            raise errors.NotFoundError(label, {"id": entity_id})
        return respond(codec_for(service.kind).serialize(record), message=f"{label} retrieved")


def _register_writes(
    router: APIRouter,
    select: Callable[[RuntimeContext], CrudService],
    label: str,
    create_model: Type[RequestModel],
    update_model: Type[RequestModel],
) -> None:
    """Attach create, update and delete routes to ``router``."""

    @router.post("", status_code=201)
    async def create(payload: create_model, runtime: RuntimeContext = Depends(get_runtime)):  # type: ignore[valid-type]
        service = select(runtime)
        record = await service.save(payload.model_dump(exclude_none=True))
        return respond(codec_for(service.kind).serialize(record), message=f"{label} created", status_code=201)

    @router.put("/{entity_id}")
    async def update(entity_id: int, payload: update_model, runtime: RuntimeContext = Depends(get_runtime)):  # type: ignore[valid-type]
        service = select(runtime)
        changes = payload.model_dump(exclude_unset=True, exclude_none=True)
        record = await service.update(entity_id, changes)
        return respond(codec_for(service.kind).serialize(record), message=f"{label} updated")

    @router.delete("/{entity_id}")
    async def delete(entity_id: int, runtime: RuntimeContext = Depends(get_runtime)):
        await select(runtime).delete(entity_id)
        return respond({"id": entity_id}, message=f"{label} deleted")


def _lookup_route(
    router: APIRouter,
    path: str,
    select: Callable[[RuntimeContext], ReadOnlyService],
    field: str,
    label: str,
    *,
    many: bool = False,
) -> None:
    @router.get(path)
    async def lookup(value: str, runtime: RuntimeContext = Depends(get_runtime)):
        service = select(runtime)
        serialize = codec_for(service.kind).serialize
        if many:
            records = await service.find_all_by(field, int(value) if value.isdigit() else value)
            return respond([serialize(record) for record in records], message=f"{label} list retrieved")
        record = await service.find_by(field, value)
        if record is None:
            raise errors.NotFoundError(label, {field: value})
        return respond(serialize(record), message=f"{label} retrieved")


def build_product_router() -> APIRouter:
    router = APIRouter(prefix="/products", tags=["products"], dependencies=[Depends(require_role(ADMIN_ROLE))])
    _lookup_route(router, "/name/{value}", lambda runtime: runtime.products, "name", "Product")
    _register_reads(router, lambda runtime: runtime.products, "Product")
    _register_writes(router, lambda runtime: runtime.products, "Product", ProductCreate, ProductUpdate)
    return router


def build_customer_router() -> APIRouter:
    router = APIRouter(prefix="/customers", tags=["customers"], dependencies=[Depends(require_identity)])
    _lookup_route(router, "/email/{value}", lambda runtime: runtime.customers, "email", "Customer")
    _register_reads(router, lambda runtime: runtime.customers, "Customer")
    _register_writes(router, lambda runtime: runtime.customers, "Customer", CustomerCreate, CustomerUpdate)
    return router


def build_bill_router() -> APIRouter:
    router = APIRouter(prefix="/bills", tags=["bills"], dependencies=[Depends(require_identity)])
    _lookup_route(router, "/customer/{value}", lambda runtime: runtime.bills, "customer_id", "Bill", many=True)
    _register_reads(router, lambda runtime: runtime.bills, "Bill")
    return router


def build_sale_router() -> APIRouter:
    router = APIRouter(prefix="/sales", tags=["sales"], dependencies=[Depends(require_identity)])

    @router.post("", status_code=201)
    async def process_sale(payload: SaleIn, runtime: RuntimeContext = Depends(get_runtime)):
        customer_id = payload.customer_id
        if payload.customer is not None:
            customer = await runtime.sales.resolve_customer(payload.customer.model_dump(exclude_none=True))
            customer_id = customer.id
        request = SaleRequest(
            customer_id=customer_id,
            lines=tuple(
                SaleLineRequest(product_id=line.product_id, quantity=line.quantity, sale_price=line.sale_price)
                for line in payload.lines
            ),
        )
        result = await runtime.sales.process_sale(request)
        message = "Sale processed" if result.delivered else "Sale processed with delivery warnings"
        return respond(serialize_sale_result(result), message=message, status_code=201)

    _register_reads(router, lambda runtime: runtime.sale_lines, "Sale line")
    return router


def build_auth_router() -> APIRouter:
    router = APIRouter(prefix="/auth", tags=["auth"])

    @router.post("/login")
    async def login(payload: LoginIn, runtime: RuntimeContext = Depends(get_runtime)):
        identity = _identity(runtime)
        tokens = await call_provider(
            lambda: identity.validate_credentials(payload.username, payload.password),
            default_message="Authentication failed",
            default_status=401,
        )
        return respond(dict(tokens), message="Login successful")

    @router.post("/register", status_code=201)
    async def register(payload: RegisterIn, runtime: RuntimeContext = Depends(get_runtime)):
        identity = _identity(runtime)
        await call_provider(
            lambda: identity.register(payload.username, payload.password, payload.email),
            default_message="Registration failed",
        )
        return respond({"username": payload.username}, message="User registered", status_code=201)

    @router.post("/confirm")
    async def confirm(payload: ConfirmIn, runtime: RuntimeContext = Depends(get_runtime)):
        identity = _identity(runtime)
        await call_provider(
            lambda: identity.confirm(payload.username, payload.code),
            default_message="Confirmation failed",
        )
        return respond({"username": payload.username}, message="User confirmed")

    @router.post("/refresh")
    async def refresh(payload: RefreshIn, runtime: RuntimeContext = Depends(get_runtime)):
        identity = _identity(runtime)
        tokens = await call_provider(
            lambda: identity.refresh(payload.username, payload.refresh_token),
            default_message="Token refresh failed",
            default_status=401,
        )
        return respond(dict(tokens), message="Token refreshed")

    @router.post("/resend-code")
    async def resend_code(payload: UsernameIn, runtime: RuntimeContext = Depends(get_runtime)):
        identity = _identity(runtime)
        await call_provider(
            lambda: identity.resend_code(payload.username),
            default_message="Failed to resend confirmation code",
        )
        return respond({"username": payload.username}, message="Confirmation code resent")

    @router.post("/password/reset")
    async def initiate_password_reset(payload: UsernameIn, runtime: RuntimeContext = Depends(get_runtime)):
        identity = _identity(runtime)
        await call_provider(
            lambda: identity.initiate_password_reset(payload.username),
            default_message="Password reset failed",
        )
        return respond({"username": payload.username}, message="Password reset code sent")

    @router.post("/password/complete")
    async def complete_password_reset(payload: PasswordResetIn, runtime: RuntimeContext = Depends(get_runtime)):
        identity = _identity(runtime)
        await call_provider(
            lambda: identity.complete_password_reset(payload.username, payload.code, payload.new_password),
            default_message="Password reset failed",
        )
        return respond({"username": payload.username}, message="Password reset successful")

    @router.post("/logout")
    async def logout(request: Request, runtime: RuntimeContext = Depends(get_runtime)):
        identity = _identity(runtime)
        token = bearer_token(request)
        await call_provider(
            lambda: identity.logout(token),
            default_message="Logout failed",
            default_status=401,
        )
        return respond(None, message="Logout successful")

    return router


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


def install_error_handlers(app: FastAPI) -> None:
    """Render every failure through :func:`sales_erp.errors.error_envelope`."""

    @app.exception_handler(errors.AppError)
    async def handle_app_error(request: Request, exc: errors.AppError) -> JSONResponse:
        log.warning("%s %s failed with %r", request.method, request.url.path, exc)
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        log.warning("%s %s rejected: request validation failed", request.method, request.url.path)
        failure = errors.ValidationError("Validation failed", jsonable_encoder(exc.errors()))
        return error_response(failure)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return error_response(errors.AppError(str(exc.detail), status_code=exc.status_code))

    @app.middleware("http")
    async def handle_unexpected(request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            log.exception("Unhandled error on %s %s", request.method, request.url.path)
            return error_response(exc)


def install_rate_limit(app: FastAPI) -> None:
    """Refuse requests over the per client budget held in ``app.state.rate_limiter``."""

    @app.middleware("http")
    async def limit_requests(request: Request, call_next):
        limiter: Optional[FixedWindowRateLimiter] = getattr(request.app.state, "rate_limiter", None)
        client = request.client.host if request.client is not None else "unknown"
        if limiter is not None and not limiter.allow(client):
            refused = errors.ApplicationError(errors.RATE_LIMITED_MESSAGE, status_code=errors.RATE_LIMIT_STATUS)
            return error_response(refused)
        return await call_next(request)


def create_app(
    runtime: Optional[RuntimeContext] = None,
    *,
    config_path: Optional[Path] = None,
    rate_limit: Optional[RateLimitSettings] = None,
) -> FastAPI:
    """Build the application.

    When ``runtime`` is given it is used as-is and stays owned by the caller.
    Otherwise the context is loaded from ``config.ini`` on startup and closed
    on shutdown. The request budget comes from ``rate_limit``, then from the
    runtime settings, then from the defaults.
    """

    def limiter_for(context: Optional[RuntimeContext]) -> FixedWindowRateLimiter:
        if rate_limit is not None:
            return FixedWindowRateLimiter.from_settings(rate_limit)
        if context is not None and context.settings is not None:
            return FixedWindowRateLimiter.from_settings(context.settings.rate_limit)
        return FixedWindowRateLimiter.from_settings(RateLimitSettings())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if runtime is not None:
            yield
            return
        owned = await load_runtime_context(config_path)
        app.state.runtime = owned
        app.state.rate_limiter = limiter_for(owned)
        try:
            yield
        finally:
            await owned.close()

    app = FastAPI(title="Sales ERP", lifespan=lifespan)
    app.state.rate_limiter = limiter_for(runtime)
    if runtime is not None:
        app.state.runtime = runtime

    install_error_handlers(app)
    install_rate_limit(app)
    app.include_router(build_auth_router())
    app.include_router(build_product_router())
    app.include_router(build_customer_router())
    app.include_router(build_bill_router())
    app.include_router(build_sale_router())
    return app
