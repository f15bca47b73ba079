"""HTTP route definitions for the provisioning service."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from ..domain import errors
from ..domain.account import Account
from ..domain.contracts import CheckoutInput, CodeVerification, SignupDetails
from ..domain.service import AccountService, ensure_tenant_access
from ..domain.signup import SignupOrchestrator, VerificationResult
from ..security.rate_limiter import (
    SIGNUP_IP_POLICY,
    SIGNUP_VERIFY_POLICY,
    RateLimiter,
    RateLimitPolicy,
    client_ip,
)
from ..security.session import SessionDescriptor, SessionManager

logger = logging.getLogger(__name__)

router = APIRouter()


class LoginRequest(BaseModel):
    """Credentials submitted to the login endpoint."""

    email: str | None = None
    password: str | None = None


class AuthResponse(BaseModel):
    """Routing hints returned alongside a freshly issued session cookie."""

    ok: bool = True
    role: str
    tenant_id: str | None
    status: str

    @classmethod
    def from_domain(cls, account: Account) -> "AuthResponse":
        return cls(role=account.role.value, tenant_id=account.tenant_id, status=account.status.value)


class SessionResponse(BaseModel):
    account_id: str
    role: str
    tenant_id: str | None
    status: str
    expires_at: int

    @classmethod
    def from_descriptor(cls, session: SessionDescriptor) -> "SessionResponse":
        return cls(
            account_id=session.account_id,
            role=session.role,
            tenant_id=session.tenant_id,
            status=session.status,
            expires_at=session.expires_at,
        )


class SignupRequestBody(BaseModel):
    """Details submitted to open a signup request."""

    email: str | None = None
    password: str | None = None
    venue: str | None = None
    plan: str | None = None


class SignupRequestResponse(BaseModel):
    """Identical for new requests and for notices sent to existing owners."""

    ok: bool = True
    token: str
    expires_in: int


class VerifyCodeBody(BaseModel):
    token: str | None = None
    code: str | None = None


class VerificationResponse(BaseModel):
    ok: bool = True
    email: str
    plan: str | None
    state: str

    @classmethod
    def from_result(cls, result: VerificationResult) -> "VerificationResponse":
        return cls(email=result.email, plan=result.plan, state=result.state.value)


class CheckoutRequestBody(BaseModel):
    email: str | None = None
    plan: str | None = None


class CheckoutResponse(BaseModel):
    url: str


class OkResponse(BaseModel):
    ok: bool = True


class WebhookResponse(BaseModel):
    received: bool = True


def get_service(request: Request) -> AccountService:
    """Resolve the `AccountService` stored on the FastAPI application state."""
    service: AccountService = request.app.state.account_service
    return service


def get_orchestrator(request: Request) -> SignupOrchestrator:
    orchestrator: SignupOrchestrator = request.app.state.signup_orchestrator
    return orchestrator


def get_sessions(request: Request) -> SessionManager:
    sessions: SessionManager = request.app.state.session_manager
    return sessions


def get_rate_limiter(request: Request) -> RateLimiter:
    limiter: RateLimiter = request.app.state.rate_limiter
    return limiter


def require_session(
    request: Request, sessions: SessionManager = Depends(get_sessions)
) -> SessionDescriptor:
    """Return the caller's session or reject the request as unauthenticated."""
    session = sessions.parse(request.cookies.get(sessions.cookie_name))
    if session is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=errors.UNAUTHORIZED)
    return session


def require_tenant_session(
    tenant_id: str, session: SessionDescriptor = Depends(require_session)
) -> SessionDescriptor:
    """Dependency for tenant-scoped routes taking a ``tenant_id`` path parameter.

    No route in this service is tenant-scoped; the menu and venue routers
    mount this to reject sessions belonging to another tenant.
    """
    try:
        ensure_tenant_access(session, tenant_id)
    except errors.ProvisioningError as exc:
        raise _http_error(exc) from exc
    return session


@router.post("/auth/login", response_model=AuthResponse)
def login(
    request: Request,
    response: Response,
    payload: LoginRequest | None = None,
    service: AccountService = Depends(get_service),
    sessions: SessionManager = Depends(get_sessions),
) -> AuthResponse:
    """Check credentials and set the session cookie."""
    payload = payload or LoginRequest()
    try:
        grant = service.login(
            email=payload.email,
            password=payload.password,
            client_ip=client_ip(request),
        )
    except errors.ProvisioningError as exc:
        raise _http_error(exc) from exc
    sessions.set_cookie(response, grant.cookie_value)
    return AuthResponse.from_domain(grant.account)


@router.post("/auth/refresh", response_model=AuthResponse)
def refresh(
    request: Request,
    response: Response,
    service: AccountService = Depends(get_service),
    sessions: SessionManager = Depends(get_sessions),
) -> AuthResponse:
    """Reissue the session from current account state, e.g. after activation."""
    try:
        grant = service.refresh(request.cookies.get(sessions.cookie_name))
    except errors.ProvisioningError as exc:
        raise _http_error(exc) from exc
    sessions.set_cookie(response, grant.cookie_value)
    return AuthResponse.from_domain(grant.account)


@router.post("/auth/logout", response_model=OkResponse)
def logout(response: Response, sessions: SessionManager = Depends(get_sessions)) -> OkResponse:
    sessions.clear_cookie(response)
    return OkResponse()


@router.get("/auth/session", response_model=SessionResponse)
def current_session(session: SessionDescriptor = Depends(require_session)) -> SessionResponse:
    return SessionResponse.from_descriptor(session)


@router.post("/signup/request", response_model=SignupRequestResponse)
def signup_request(
    request: Request,
    payload: SignupRequestBody | None = None,
    orchestrator: SignupOrchestrator = Depends(get_orchestrator),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> SignupRequestResponse:
    """Validate signup details and email a verification code."""
    payload = payload or SignupRequestBody()
    _enforce_rate_limit(limiter, client_ip(request), SIGNUP_IP_POLICY)
    try:
        details = SignupDetails.parse(
            email=payload.email,
            password=payload.password,
            venue=payload.venue,
            plan=payload.plan,
            plans=orchestrator.plans,
        )
        result = orchestrator.submit_details(details)
    except errors.ProvisioningError as exc:
        raise _http_error(exc) from exc
    return SignupRequestResponse(token=result.token, expires_in=result.expires_in)


@router.post("/signup/verify", response_model=VerificationResponse)
def signup_verify(
    request: Request,
    payload: VerifyCodeBody | None = None,
    orchestrator: SignupOrchestrator = Depends(get_orchestrator),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> VerificationResponse:
    """Confirm the emailed code and materialise the pending account."""
    payload = payload or VerifyCodeBody()
    _enforce_rate_limit(limiter, client_ip(request), SIGNUP_VERIFY_POLICY)
    try:
        verification = CodeVerification.parse(token=payload.token, code=payload.code)
        result = orchestrator.verify_code(verification)
    except errors.ProvisioningError as exc:
        raise _http_error(exc) from exc
    return VerificationResponse.from_result(result)


@router.get("/signup/verify", response_model=VerificationResponse)
def signup_verify_link(
    request: Request,
    token: str | None = Query(default=None),
    orchestrator: SignupOrchestrator = Depends(get_orchestrator),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> VerificationResponse:
    """Confirm the signup through the emailed link."""
    _enforce_rate_limit(limiter, client_ip(request), SIGNUP_VERIFY_POLICY)
    if not token:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=errors.MISSING_FIELDS)
    try:
        result = orchestrator.verify_link(token)
    except errors.ProvisioningError as exc:
        raise _http_error(exc) from exc
    return VerificationResponse.from_result(result)


@router.post("/checkout/create", response_model=CheckoutResponse)
def checkout_create(
    payload: CheckoutRequestBody | None = None,
    orchestrator: SignupOrchestrator = Depends(get_orchestrator),
) -> CheckoutResponse:
    """Return a hosted checkout URL for the selected plan."""
    payload = payload or CheckoutRequestBody()
    try:
        checkout = CheckoutInput.parse(email=payload.email, plan=payload.plan, plans=orchestrator.plans)
        result = orchestrator.create_checkout(checkout)
    except errors.ProvisioningError as exc:
        raise _http_error(exc) from exc
    return CheckoutResponse(url=result.url)


@router.post("/checkout/webhook", response_model=WebhookResponse)
async def checkout_webhook(
    request: Request,
    orchestrator: SignupOrchestrator = Depends(get_orchestrator),
) -> WebhookResponse:
    """Receive payment provider callbacks; the raw body is needed for signature checks."""
    raw_body = await request.body()
    signature = request.headers.get("stripe-signature")
    try:
        await run_in_threadpool(orchestrator.handle_webhook, raw_body, signature)
    except errors.ProvisioningError as exc:
        raise _http_error(exc) from exc
    return WebhookResponse()


def _enforce_rate_limit(limiter: RateLimiter, key: str, policy: RateLimitPolicy) -> None:
    decision = limiter.check(key, policy)
    if not decision.allowed:
        logger.warning("rate limit %s exceeded for %s", policy.name, key)
        raise _http_error(errors.RateLimited(decision.retry_after()))


def _http_error(exc: errors.ProvisioningError) -> HTTPException:
    headers = None
    if isinstance(exc, errors.RateLimited):
        headers = {"Retry-After": str(exc.retry_after)}
    elif exc.status_code >= 500:
        logger.error("request failed with dependency error %s", exc.code)
    return HTTPException(status_code=exc.status_code, detail=exc.code, headers=headers)
