from typing import Optional

from fastapi import Header, HTTPException
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.token_secret, salt="bills-sync-token")


def issue_token(user_id: int = 1) -> str:
    return _serializer().dumps({"u": user_id})


def read_token(token: str, max_age_secs: Optional[int] = None) -> Optional[int]:
    """User id carried by ``token``, or None if it is forged, expired or malformed."""
    if max_age_secs is None:
        max_age_secs = get_settings().token_max_age_secs
    try:
        data = _serializer().loads(token, max_age=max_age_secs)
    except (SignatureExpired, BadSignature):
        return None
    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int) or user_id < 1:
        return None
    return user_id


def require_user(authorization: Optional[str] = Header(default=None)) -> int:
    if not authorization:
        raise HTTPException(status_code=401, detail="Unauthorized")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Unauthorized")
    user_id = read_token(token.strip())
    if user_id is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id
