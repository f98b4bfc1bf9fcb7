from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Form, Header, HTTPException, Path, Query, Request, Response
from fastapi.responses import RedirectResponse

from zentik_auth.api.schemas import (
    AccessTokenCreateRequest,
    AccessTokenUpdateRequest,
    AppleMobileRequest,
    AuthResponse,
    BucketTokenCreateRequest,
    ConfirmEmailRequest,
    EmailConfirmationRequest,
    Envelope,
    ExchangeCodeRequest,
    ForgotPasswordRequest,
    LoginRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordSetRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    RegisterResponse,
    ResetTokenRequest,
    TokenRefreshRequest,
)
from zentik_auth.logging import get_logger
from zentik_auth.service.auth import public_user
from zentik_auth.service.device import DeviceInfo, extract_device_info
from zentik_auth.service.errors import AuthenticationError, BadRequestError
from zentik_auth.service.gateway import (
    ACCESS_COOKIE,
    LEGACY_ACCESS_COOKIE,
    REFRESH_COOKIE,
    AuthContext,
    extract_credential,
)
from zentik_auth.service.runtime import get_runtime
from zentik_auth.service.scopes import AccessTokenScope, ScopeRequirement, authorize_scopes
from zentik_auth.service.tokens import TokenPair
from zentik_auth.storage.models import User, UserIdentity, UserSession

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


# authentication dependencies

async def get_auth_context(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    return await runtime.gateway.authenticate(
        authorization, request.query_params, request.cookies
    )


async def get_user(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
    """Any user credential; system tokens are verified by their own guard."""
    if ctx.kind == "system" or not ctx.user:
        raise AuthenticationError("User credentials required")
    return ctx


async def get_optional_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Optional[AuthContext]:
    if not extract_credential(authorization, request.query_params, request.cookies):
        return None
    ctx = await get_auth_context(request, authorization)
    return ctx if ctx.user else None


async def get_jwt_user(ctx: AuthContext = Depends(get_user)) -> AuthContext:
    """Session-bound endpoints need the JWT that names the session."""
    if ctx.kind != "jwt":
        raise _http_error("forbidden", "a signed-in session is required", status_code=403)
    return ctx


def require_scopes(requirement: ScopeRequirement):
    """Dependency factory checking the caller's token scopes against ``requirement``."""

    async def dependency(request: Request, ctx: AuthContext = Depends(get_user)) -> AuthContext:
        body: Optional[Dict[str, Any]] = None
        if requirement.bucket_param and request.method in {"POST", "PUT", "PATCH"}:
            try:
                parsed = await request.json()
            except ValueError:
                parsed = None
            body = parsed if isinstance(parsed, dict) else None
        authorize_scopes(
            requirement,
            ctx.scopes,
            path_params=request.path_params,
            body=body,
            query=request.query_params,
        )
        return ctx

    return dependency


# helpers

def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


def _device_info(request: Request) -> DeviceInfo:
    return extract_device_info(
        request.headers.get("user-agent"), ip_address=_client_ip(request)
    )


def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _apply_session_cookies(response: Response, tokens: TokenPair) -> None:
    settings = get_runtime().settings
    common = {
        "httponly": True,
        "secure": settings.cookie_secure,
        "samesite": settings.cookie_samesite.value,
        "domain": settings.cookie_domain,
        "path": "/",
    }
    response.set_cookie(
        ACCESS_COOKIE, tokens.access_token, expires=_as_aware(tokens.access_expires_at), **common
    )
    response.set_cookie(
        REFRESH_COOKIE, tokens.refresh_token, expires=_as_aware(tokens.refresh_expires_at), **common
    )


def _clear_session_cookies(response: Response) -> None:
    settings = get_runtime().settings
    for name in (ACCESS_COOKIE, REFRESH_COOKIE, LEGACY_ACCESS_COOKIE):
        response.delete_cookie(
            name,
            path="/",
            domain=settings.cookie_domain,
            secure=settings.cookie_secure,
            samesite=settings.cookie_samesite.value,
        )


def _auth_response(user: User, tokens: TokenPair, session: UserSession) -> AuthResponse:
    return AuthResponse(
        user=public_user(user),
        session_id=session.id,
        session_expires_at=session.expires_at,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        access_expires_at=tokens.access_expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
    )


def _identity_view(identity: UserIdentity) -> Dict[str, Any]:
    return {
        "id": identity.id,
        "provider_type": identity.provider_type.value,
        "email": identity.email,
        "avatar_url": identity.avatar_url,
        "created_at": identity.created_at,
        "updated_at": identity.updated_at,
    }


# registration, login and token rotation

@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a local account.

    With email enabled the account must be confirmed before login and no
    tokens are returned; otherwise a session is started immediately.

    Raises:
        409: If the email or username is already taken
    """
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.email,
        body.username,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        locale=body.locale,
        device_info=_device_info(request),
    )
    session_payload = None
    if result.get("tokens"):
        _apply_session_cookies(response, result["tokens"])
        session_payload = _auth_response(result["user"], result["tokens"], result["session"])
    return Envelope(
        status="ok",
        data=RegisterResponse(
            message=result["message"],
            user=public_user(result["user"]),
            email_confirmation_required=result["email_confirmation_required"],
            session=session_payload,
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email or username and password.

    Raises:
        401: If credentials are invalid or the email is unconfirmed
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.password,
        email=body.email,
        username=body.username,
        device_info=_device_info(request),
    )
    _apply_session_cookies(response, result.tokens)
    return Envelope(status="ok", data=_auth_response(result.user, result.tokens, result.session))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
):
    runtime = get_runtime()
    refresh_token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    if not refresh_token:
        raise AuthenticationError("Refresh token required")
    tokens, session = await runtime.auth.refresh_tokens(refresh_token)
    user = runtime.store.get_user(session.user_id)
    if not user:
        raise AuthenticationError("Invalid refresh token")
    _apply_session_cookies(response, tokens)
    return Envelope(status="ok", data=_auth_response(user, tokens, session))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    revoked = runtime.auth.logout(principal.token_id) if principal.kind == "jwt" else False
    _clear_session_cookies(response)
    return Envelope(status="ok", data={"message": "Logged out", "session_revoked": revoked})


@router.post("/auth/exchange-code", response_model=Envelope, tags=["auth"])
async def exchange_code(body: ExchangeCodeRequest, response: Response):
    """Redeem the single-use code handed to a client by an OAuth redirect.

    Raises:
        400: ``invalid_code`` when the code is unknown, expired or already used
    """
    runtime = get_runtime()
    tokens, session = await runtime.auth.exchange_code(body.code, body.session_id)
    user = runtime.store.get_user(session.user_id)
    if not user:
        raise AuthenticationError("Invalid code")
    _apply_session_cookies(response, tokens)
    return Envelope(status="ok", data=_auth_response(user, tokens, session))


# current user

@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    return Envelope(status="ok", data=public_user(principal.user))


@router.patch("/auth/me", response_model=Envelope, tags=["auth"])
async def update_me(body: ProfileUpdateRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.linker.update_profile(principal.user_id, **body.model_dump(exclude_none=True))
    return Envelope(status="ok", data=public_user(user))


# sessions

@router.get("/auth/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    views = runtime.sessions.list_user_sessions(principal.user_id, principal.token_id)
    return Envelope(status="ok", data={"items": [view.as_dict() for view in views]})


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    session_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    if not runtime.sessions.revoke_session(principal.user_id, session_id):
        raise _http_error("not_found", "Session not found", status_code=404)
    return Envelope(status="ok", data={"message": "Session revoked"})


@router.delete("/auth/sessions", response_model=Envelope, tags=["sessions"])
async def revoke_other_sessions(principal: AuthContext = Depends(get_jwt_user)):
    runtime = get_runtime()
    count = runtime.sessions.revoke_all_except(principal.user_id, principal.token_id)
    return Envelope(status="ok", data={"message": "Other sessions revoked", "revoked": count})


# access tokens

@router.get("/auth/access-tokens", response_model=Envelope, tags=["access-tokens"])
async def list_access_tokens(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data={"items": runtime.access_tokens.list_user_tokens(principal.user_id)})


@router.post("/auth/access-tokens", response_model=Envelope, status_code=201, tags=["access-tokens"])
async def create_access_token(
    body: AccessTokenCreateRequest, principal: AuthContext = Depends(get_user)
):
    """Create an opaque access token; the plaintext is only shown in this response."""
    runtime = get_runtime()
    created = await runtime.access_tokens.create_token(
        principal.user_id,
        body.name,
        body.scopes,
        body.expires_at,
        store_token=body.store_token,
    )
    return Envelope(status="ok", data=created)


@router.delete("/auth/access-tokens", response_model=Envelope, tags=["access-tokens"])
async def revoke_all_access_tokens(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    revoked = runtime.access_tokens.revoke_all_tokens(principal.user_id)
    return Envelope(status="ok", data={"revoked": revoked})


@router.get("/auth/access-tokens/bucket/{bucket_id}", response_model=Envelope, tags=["access-tokens"])
async def list_bucket_tokens(
    bucket_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    items = runtime.access_tokens.list_tokens_for_bucket(principal.user_id, bucket_id)
    return Envelope(status="ok", data={"items": items})


@router.post(
    "/auth/access-tokens/bucket/{bucket_id}",
    response_model=Envelope,
    status_code=201,
    tags=["access-tokens"],
)
async def create_bucket_token(
    body: BucketTokenCreateRequest,
    bucket_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    created = await runtime.access_tokens.create_token_for_bucket(
        principal.user_id, bucket_id, body.name, body.expires_at
    )
    return Envelope(status="ok", data=created)


@router.get("/auth/access-tokens/{token_id}", response_model=Envelope, tags=["access-tokens"])
async def get_access_token(
    token_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.access_tokens.get_token(token_id, principal.user_id))


@router.patch("/auth/access-tokens/{token_id}", response_model=Envelope, tags=["access-tokens"])
async def update_access_token(
    body: AccessTokenUpdateRequest,
    token_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    updated = runtime.access_tokens.update_token(principal.user_id, token_id, body.name)
    return Envelope(status="ok", data=updated)


@router.delete("/auth/access-tokens/{token_id}", response_model=Envelope, tags=["access-tokens"])
async def revoke_access_token(
    token_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    runtime.access_tokens.revoke_token(principal.user_id, token_id)
    return Envelope(status="ok", data={"message": "Access token revoked"})


# scope-gated capabilities

@router.post("/auth/buckets/{bucket_id}/messages/authorize", response_model=Envelope, tags=["scopes"])
async def authorize_bucket_message(
    bucket_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(
        require_scopes(
            ScopeRequirement.of(AccessTokenScope.MESSAGE_BUCKET_CREATION, bucket_param="bucket_id")
        )
    ),
):
    return Envelope(
        status="ok",
        data={"authorized": True, "bucket_id": bucket_id, "user_id": principal.user_id},
    )


@router.get("/auth/watch/authorize", response_model=Envelope, tags=["scopes"])
async def authorize_watch(
    principal: AuthContext = Depends(require_scopes(ScopeRequirement.of(AccessTokenScope.WATCH))),
):
    return Envelope(status="ok", data={"authorized": True, "user_id": principal.user_id})


# identities and passwords

@router.get("/auth/identities", response_model=Envelope, tags=["identities"])
async def list_identities(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    identities = runtime.linker.get_user_identities(principal.user_id)
    return Envelope(status="ok", data={"items": [_identity_view(i) for i in identities]})


@router.delete("/auth/identities/{identity_id}", response_model=Envelope, tags=["identities"])
async def disconnect_identity(
    identity_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    """Unlink a provider identity.

    Raises:
        403: If the identity belongs to someone else, or removing it would
            leave the account without a password or another identity
        404: If the identity does not exist
    """
    runtime = get_runtime()
    runtime.linker.disconnect_identity(principal.user_id, identity_id)
    return Envelope(status="ok", data={"message": "Identity disconnected"})


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(body: PasswordChangeRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.linker.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"message": "Password changed"})


@router.post("/auth/set-password", response_model=Envelope, tags=["auth"])
async def set_password(body: PasswordSetRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.linker.set_password(principal.user_id, body.new_password)
    return Envelope(status="ok", data={"message": "Password set"})


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    """Send a password reset code; unknown addresses get the same answer."""
    runtime = get_runtime()
    runtime.auth.request_password_reset(body.email, body.locale)
    return Envelope(
        status="ok",
        data={"message": "If the email exists, a reset code has been sent."},
    )


@router.post("/auth/validate-reset-token", response_model=Envelope, tags=["auth"])
async def validate_reset_token(body: ResetTokenRequest):
    runtime = get_runtime()
    return Envelope(status="ok", data={"valid": runtime.auth.validate_reset_token(body.reset_token)})


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.reset_token, body.new_password)
    return Envelope(status="ok", data={"message": "Password reset successfully"})


@router.post("/auth/request-email-confirmation", response_model=Envelope, tags=["auth"])
async def request_email_confirmation(body: EmailConfirmationRequest):
    runtime = get_runtime()
    if not runtime.settings.email_enabled:
        raise BadRequestError("Email functionality is disabled")
    return Envelope(status="ok", data=runtime.auth.request_email_confirmation(body.email, body.locale))


@router.post("/auth/confirm-email", response_model=Envelope, tags=["auth"])
async def confirm_email(body: ConfirmEmailRequest):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.auth.confirm_email(body.code, body.locale))


# external providers

@router.get("/auth/providers", response_model=Envelope, tags=["oauth"])
async def list_providers():
    runtime = get_runtime()
    return Envelope(status="ok", data={"items": runtime.registry.public_providers()})


@router.post("/auth/apple/mobile", response_model=Envelope, tags=["oauth"])
async def apple_mobile(
    body: AppleMobileRequest,
    request: Request,
    response: Response,
    principal: Optional[AuthContext] = Depends(get_optional_user),
):
    """Sign in (or link, when already authenticated) with an Apple identity token."""
    runtime = get_runtime()
    current_user_id = principal.user_id if principal else None
    result = await runtime.auth.login_with_apple_identity_token(
        body.identity_token,
        body.payload,
        current_user_id=current_user_id,
        device_info=_device_info(request),
    )
    if result is None:
        return Envelope(
            status="ok",
            data={"message": "Provider connected successfully", "connected": True, "provider": "apple"},
        )
    _apply_session_cookies(response, result.tokens)
    return Envelope(status="ok", data=_auth_response(result.user, result.tokens, result.session))


# catch-all provider paths stay last so they never shadow the fixed routes above

async def _finish_oauth_callback(
    request: Request,
    provider_id: str,
    code: Optional[str],
    state: Optional[str],
    redirect: Optional[str],
    error: Optional[str],
):
    runtime = get_runtime()
    if error:
        logger.info("oauth_callback_provider_error", provider_id=provider_id, error=error)
        raise BadRequestError(f"Provider returned an error: {error}")
    outcome = await runtime.auth.complete_oauth_callback(
        provider_id,
        code or "",
        state,
        redirect=redirect,
        user_agent=request.headers.get("user-agent"),
        ip_address=_client_ip(request),
    )
    if outcome.is_redirect:
        return RedirectResponse(outcome.location, status_code=302)
    return Envelope(status="ok", data=outcome.body)


@router.get("/auth/{provider_id}/callback", tags=["oauth"])
async def oauth_callback(
    request: Request,
    provider_id: str = Path(..., max_length=64),
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=8192),
    redirect: Optional[str] = Query(None, max_length=2048),
    error: Optional[str] = Query(None, max_length=256),
):
    return await _finish_oauth_callback(request, provider_id, code, state, redirect, error)


@router.post("/auth/{provider_id}/callback", tags=["oauth"])
async def oauth_callback_form_post(
    request: Request,
    provider_id: str = Path(..., max_length=64),
    code: Optional[str] = Form(None, max_length=2048),
    state: Optional[str] = Form(None, max_length=8192),
    error: Optional[str] = Form(None, max_length=256),
    redirect: Optional[str] = Query(None, max_length=2048),
):
    """Callback for providers answering with ``response_mode=form_post`` (Apple)."""
    return await _finish_oauth_callback(request, provider_id, code, state, redirect, error)


@router.get("/auth/{provider_id}", tags=["oauth"])
async def oauth_authorize(
    provider_id: str = Path(..., max_length=64),
    redirect: Optional[str] = Query(None, max_length=2048),
    locale: Optional[str] = Query(None, max_length=16),
    connect: bool = Query(False),
    principal: Optional[AuthContext] = Depends(get_optional_user),
):
    """Redirect the browser to the provider's consent page.

    With ``connect=true`` and a signed-in session the provider identity is
    linked to the caller instead of signing in.
    """
    runtime = get_runtime()
    connect_user_id = None
    access_token = None
    if connect:
        if not principal or principal.kind != "jwt":
            raise AuthenticationError("Sign in to connect a provider")
        connect_user_id = principal.user_id
        access_token = principal.raw_token
    location = runtime.auth.authorization_redirect(
        provider_id,
        redirect=redirect,
        locale=locale,
        connect_user_id=connect_user_id,
        access_token=access_token,
    )
    return RedirectResponse(location, status_code=302)
