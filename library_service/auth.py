import logging
from datetime import timedelta
from functools import wraps

import jwt
from flask import current_app, g, request

from .errors import Forbidden, Unauthorized
from .models import utcnow

logger = logging.getLogger(__name__)


def issue_token(principal):
    cfg = current_app.config
    payload = {
        "sub": str(principal.subject_id),
        "email": principal.email,
        "role": principal.role,
        "exp": utcnow() + timedelta(minutes=cfg["JWT_EXP_MINUTES"]),
    }
    return jwt.encode(payload, cfg["JWT_SECRET"], algorithm=cfg["JWT_ALGORITHM"])


def decode_token(token):
    cfg = current_app.config
    try:
        claims = jwt.decode(token, cfg["JWT_SECRET"], algorithms=[cfg["JWT_ALGORITHM"]])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token has expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("Invalid token")

    try:
        subject_id = int(claims["sub"])
    except (KeyError, TypeError, ValueError):
        raise Unauthorized("Invalid token")
    return {"subject_id": subject_id, "email": claims.get("email"), "role": claims.get("role")}


def require_token(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        header = request.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token:
            raise Unauthorized("Access token required")
        user = decode_token(token.strip())
        identity = current_app.extensions["library"].identity
        if user["role"] not in ("admin", "user") or not identity.is_active(
            user["subject_id"], user["role"]
        ):
            logger.warning(
                "Token for inactive or unknown account %s on %s", user["email"], request.path
            )
            raise Unauthorized("Account is no longer active")
        g.user = user
        return func(*args, **kwargs)

    return wrapper


def require_admin(func):
    @wraps(func)
    @require_token
    def wrapper(*args, **kwargs):
        if g.user["role"] != "admin":
            logger.warning("Admin access denied on %s for %s", request.path, g.user["email"])
            raise Forbidden("Admin access required")
        return func(*args, **kwargs)

    return wrapper
