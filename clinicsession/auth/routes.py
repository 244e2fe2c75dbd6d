"""
ClinicSession - Authentication Routes

API endpoints for authentication:
- POST   /auth/login             - Password login (may require 2FA)
- POST   /auth/2fa/verify        - Complete a 2FA login
- POST   /auth/refresh           - Rotate refresh token, mint access token
- POST   /auth/logout            - End every session of the caller
- POST   /auth/register          - Create account (manage:users, 2FA enrolled)
- POST   /auth/password          - Change own password
- GET    /auth/me                - Current account
- GET    /auth/devices           - Devices holding a valid refresh token
- DELETE /auth/devices/{id}      - Revoke one device
- POST   /auth/2fa/setup|enable|disable, GET /auth/2fa/status

All state transitions are recorded in the security audit trail.
Login, registration and the 2FA challenge routes are rate limited per client IP.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from clinicsession.auth.container import AuthServices
from clinicsession.auth.dependencies import (
    get_current_account,
    get_services,
    require_permission,
    require_two_factor,
)
from clinicsession.auth.models import Account
from clinicsession.auth.schemas import (
    AccountResponse,
    ChangePasswordRequest,
    DeviceResponse,
    DevicesResponse,
    ErrorResponse,
    LoginRequest,
    LoginResponse,
    MeResponse,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
    TwoFactorCodeRequest,
    TwoFactorEnableResponse,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    TwoFactorVerifyRequest,
    TwoFactorVerifyResponse,
)
from clinicsession.auth.token_service import AuthContext, TokenPair
from clinicsession.auth.two_factor import TwoFactorState
from clinicsession.errors import AccountLocked, AuthError
from clinicsession.config import settings
from clinicsession.gateway.rate_limit import limiter
from clinicsession.gateway.rbac import Permission


router = APIRouter(prefix="/auth", tags=["authentication"])


def to_http_exception(exc: AuthError) -> HTTPException:
    """Translate a session-layer error into its HTTP form."""
    headers = None
    if exc.status_code == status.HTTP_401_UNAUTHORIZED:
        headers = {"WWW-Authenticate": "Bearer"}
    elif isinstance(exc, AccountLocked) and exc.locked_until is not None:
        headers = {"X-Locked-Until": exc.locked_until.isoformat()}
    return HTTPException(status_code=exc.status_code, detail=exc.message, headers=headers)


def _account_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        email=account.email,
        role=account.role,
        clinic_id=account.clinic_id,
        is_active=account.is_active,
        two_factor_enabled=account.two_factor_enabled,
        password_expires_at=account.password_expires_at,
        created_at=account.created_at,
    )


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(**pair.model_dump())


@router.post(
    "/login",
    response_model=LoginResponse,
    responses={401: {"model": ErrorResponse}, 423: {"model": ErrorResponse}},
    summary="Authenticate with email and password",
)
@limiter.limit(settings.LOGIN_RATE_LIMIT)
async def login(request: Request, body: LoginRequest, services: AuthServices = Depends(get_services)):
    """
    Authenticate with email and password.

    Returns final tokens, or a temp token when the account has 2FA enabled.

    Raises:
        401: Invalid credentials
        423: Account locked
    """
    try:
        result = await services.credentials.login(body.email, body.password, body.device_id)
    except AuthError as e:
        raise to_http_exception(e)

    return LoginResponse(
        account=_account_response(result.account),
        requires_two_factor=result.requires_two_factor,
        tokens=_token_response(result.tokens) if result.tokens else None,
        temp_token=result.temp_token,
        password_expired=result.password_expired,
    )


@router.post(
    "/2fa/verify",
    response_model=TwoFactorVerifyResponse,
    responses={401: {"model": ErrorResponse}},
    summary="Complete a two-factor login",
)
@limiter.limit(settings.TWO_FACTOR_VERIFY_RATE_LIMIT)
async def verify_two_factor(
    request: Request,
    body: TwoFactorVerifyRequest,
    services: AuthServices = Depends(get_services),
):
    try:
        result = await services.two_factor.challenge_verify(body.temp_token, body.code, body.device_id)
    except AuthError as e:
        raise to_http_exception(e)

    return TwoFactorVerifyResponse(
        account=_account_response(result.account),
        tokens=_token_response(result.tokens),
    )


@router.post(
    "/refresh",
    response_model=TokenResponse,
    responses={401: {"model": ErrorResponse}},
    summary="Rotate refresh token",
)
async def refresh(body: RefreshRequest, services: AuthServices = Depends(get_services)):
    """
    Exchange a refresh token for a new pair.

    The presented token is invalidated. Every rejection is a generic 401.
    """
    try:
        pair = await services.tokens.refresh(body.refresh_token, body.device_id)
    except AuthError as e:
        raise to_http_exception(e)
    return _token_response(pair)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT, summary="End all sessions")
async def logout(
    account: AuthContext = Depends(get_current_account),
    services: AuthServices = Depends(get_services),
):
    """Invalidate every refresh token and outstanding access token of the caller."""
    await services.tokens.logout(account.account_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/register",
    response_model=AccountResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Create account (admin only)",
    dependencies=[Depends(require_permission(Permission.MANAGE_USERS))],
)
@limiter.limit(settings.REGISTER_RATE_LIMIT)
async def register(
    request: Request,
    body: RegisterRequest,
    admin: AuthContext = Depends(require_two_factor),
    services: AuthServices = Depends(get_services),
):
    try:
        account = await services.credentials.register(body.email, body.password, body.role, body.clinic_id)
    except AuthError as e:
        raise to_http_exception(e)
    return _account_response(account)


@router.post(
    "/password",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={400: {"model": ErrorResponse}},
    summary="Change own password",
)
async def change_password(
    body: ChangePasswordRequest,
    account: AuthContext = Depends(get_current_account),
    services: AuthServices = Depends(get_services),
):
    """All sessions, including the current one, must log in again afterwards."""
    try:
        await services.credentials.change_password(
            account.account_id, body.current_password, body.new_password
        )
    except AuthError as e:
        raise to_http_exception(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/me", response_model=MeResponse, summary="Current account")
async def me(
    account: AuthContext = Depends(get_current_account),
    services: AuthServices = Depends(get_services),
):
    try:
        record = await services.credentials.get_account(account.account_id)
    except AuthError as e:
        raise to_http_exception(e)
    return MeResponse(
        **_account_response(record).model_dump(),
        password_expired=services.credentials.password_expired(record),
    )


@router.get("/devices", response_model=DevicesResponse, summary="List signed-in devices")
async def list_devices(
    account: AuthContext = Depends(get_current_account),
    services: AuthServices = Depends(get_services),
):
    devices = await services.tokens.list_devices(account.account_id)
    return DevicesResponse(
        devices=[DeviceResponse(**d.model_dump()) for d in devices],
        total=len(devices),
    )


@router.delete(
    "/devices/{device_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
    summary="Revoke a device",
)
async def revoke_device(
    device_id: str,
    account: AuthContext = Depends(get_current_account),
    services: AuthServices = Depends(get_services),
):
    try:
        await services.tokens.revoke_device(account.account_id, device_id)
    except AuthError as e:
        raise to_http_exception(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ----------------------------------------------------------------------
# Two-factor management
# ----------------------------------------------------------------------

@router.post("/2fa/setup", response_model=TwoFactorSetupResponse, summary="Start TOTP enrolment")
@limiter.limit(settings.TWO_FACTOR_SETUP_RATE_LIMIT)
async def setup_two_factor(
    request: Request,
    account: AuthContext = Depends(get_current_account),
    services: AuthServices = Depends(get_services),
):
    try:
        result = await services.two_factor.initiate_setup(account.account_id)
    except AuthError as e:
        raise to_http_exception(e)
    return TwoFactorSetupResponse(
        secret=result.secret,
        provisioning_uri=result.provisioning_uri,
        backup_codes=result.backup_codes,
    )


@router.post("/2fa/enable", response_model=TwoFactorEnableResponse, summary="Confirm TOTP enrolment")
async def enable_two_factor(
    body: TwoFactorCodeRequest,
    account: AuthContext = Depends(get_current_account),
    services: AuthServices = Depends(get_services),
):
    try:
        codes = await services.two_factor.confirm_setup(account.account_id, body.code)
    except AuthError as e:
        raise to_http_exception(e)
    return TwoFactorEnableResponse(backup_codes=codes)


@router.post("/2fa/disable", status_code=status.HTTP_204_NO_CONTENT, summary="Turn 2FA off")
async def disable_two_factor(
    body: TwoFactorCodeRequest,
    account: AuthContext = Depends(get_current_account),
    services: AuthServices = Depends(get_services),
):
    try:
        disabled = await services.two_factor.disable(account.account_id, body.code)
    except AuthError as e:
        raise to_http_exception(e)
    if not disabled:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Two-factor authentication is not enabled",
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/2fa/status", response_model=TwoFactorStatusResponse, summary="2FA state")
async def two_factor_status(
    account: AuthContext = Depends(get_current_account),
    services: AuthServices = Depends(get_services),
):
    try:
        state = await services.two_factor.state(account.account_id)
        record = await services.credentials.get_account(account.account_id)
    except AuthError as e:
        raise to_http_exception(e)
    return TwoFactorStatusResponse(
        state=state.value,
        enabled=state == TwoFactorState.ENABLED,
        backup_codes_remaining=len(record.backup_codes),
    )
