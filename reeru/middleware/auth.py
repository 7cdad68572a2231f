import base64
import hashlib
import hmac
from typing import Optional

import jwt
from fastapi import Depends, Header, Request

from reeru.config import Settings
from reeru.errors import InvalidInput, Unauthorized
from reeru.utils.logger import logger

UPSTASH_ISSUER = "Upstash"


def get_app_settings(request: Request) -> Settings:
    """Settings the running app was built with."""
    return request.app.state.settings


def _decode_session_token(token: str, secret: str) -> Optional[str]:
    """Return the `id` claim of a valid HS256 session token, else None."""
    if not secret or not token:
        return None
    try:
        payload = jwt.decode(token, secret, algorithms=["HS256"], options={"verify_aud": False})
    except jwt.InvalidTokenError as e:
        logger.debug("auth.token_rejected", extra={"error": type(e).__name__})
        return None
    user_id = payload.get("id")
    return str(user_id) if user_id else None


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


async def get_optional_user_id(
    request: Request,
    settings: Settings = Depends(get_app_settings),
) -> Optional[str]:
    """
    Caller identity, if any. Checked in order:

    1. request.state.user_id (set by an upstream auth middleware)
    2. X-User-ID header
    3. `id` claim of an HS256 JWT in `Authorization: Bearer` or the
       `Authorization` cookie

    Missing or invalid credentials yield None; callers decide whether that
    is an error.
    """
    state_user = getattr(request.state, "user_id", None)
    if state_user:
        return str(state_user)

    header_user = request.headers.get("x-user-id")
    if header_user:
        return header_user

    token = _bearer_token(request.headers.get("authorization")) or request.cookies.get("Authorization")
    if token:
        return _decode_session_token(_bearer_token(token) or token, settings.jwt_secret)
    return None


async def get_telegram_chat_id(
    x_telegram_chat_id: Optional[str] = Header(None),
) -> Optional[int]:
    """Chat id of a bot-originated submission."""
    if not x_telegram_chat_id:
        return None
    try:
        return int(x_telegram_chat_id)
    except ValueError:
        raise InvalidInput("Invalid x-telegram-chat-id header")


def _body_hash(body: bytes) -> str:
    digest = hashlib.sha256(body).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")


def verify_qstash_signature(signature: str, body: bytes, signing_keys: list) -> bool:
    """
    Check an Upstash-Signature header: an HS256 JWT issued by Upstash whose
    `body` claim is the base64url SHA-256 of the raw request body. Either the
    current or the next signing key may have signed it (key rotation).
    """
    expected = _body_hash(body)
    for key in signing_keys:
        if not key:
            continue
        try:
            claims = jwt.decode(
                signature,
                key,
                algorithms=["HS256"],
                issuer=UPSTASH_ISSUER,
                leeway=1,
                options={"verify_aud": False},
            )
        except jwt.InvalidTokenError:
            continue
        if hmac.compare_digest(str(claims.get("body", "")).rstrip("=").encode(), expected.encode()):
            return True
        logger.warning("auth.qstash_body_mismatch")
        return False
    return False


async def require_worker_caller(
    request: Request,
    settings: Settings = Depends(get_app_settings),
) -> str:
    """
    Gate for the internal worker route. Accepts the shared internal secret
    (direct dispatch) or a valid QStash signature. Returns which one matched.
    """
    secret = request.headers.get("x-internal-secret")
    if secret and settings.internal_secret and hmac.compare_digest(secret.encode(), settings.internal_secret.encode()):
        return "internal"

    signature = request.headers.get("upstash-signature")
    if signature:
        body = await request.body()
        keys = [settings.qstash_current_signing_key, settings.qstash_next_signing_key]
        if verify_qstash_signature(signature, body, keys):
            return "qstash"

    logger.warning(
        "auth.worker_rejected",
        extra={"client_ip": request.client.host if request.client else ""},
    )
    raise Unauthorized()
