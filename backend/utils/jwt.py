from datetime import datetime, timedelta
from jose import jwt, JWTError
from config.env import JWT_SECRET, JWT_ALGORITHM, ACCESS_TOKEN_DAYS

ROLES = {"buyer", "seller", "admin"}


def _require_jwt_secret() -> str:
    secret = (JWT_SECRET or "").strip()
    if not secret:
        raise RuntimeError("JWT_SECRET is not configured")
    return secret


def create_access_token(subject: str, role: str, extra: dict | None = None) -> str:
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role}")
    payload = dict(extra or {})
    payload.update({
        "sub": subject,
        "role": role,
        "exp": datetime.utcnow() + timedelta(days=ACCESS_TOKEN_DAYS),
        "iat": datetime.utcnow(),
    })
    return jwt.encode(payload, _require_jwt_secret(), algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> dict | None:
    try:
        return jwt.decode(token, _require_jwt_secret(), algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None
