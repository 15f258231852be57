from __future__ import annotations

from itsdangerous import BadSignature, URLSafeTimedSerializer

from medilink.core.settings import settings


serializer = URLSafeTimedSerializer(settings.secret_key, salt="medilink-session")


def sign_session(user_id: str) -> str:
    return serializer.dumps({"user_id": user_id})


def unsign_session(token: str) -> str | None:
    try:
        data = serializer.loads(token, max_age=settings.session_max_age_seconds)
    except BadSignature:
        return None
    if not isinstance(data, dict):
        return None
    return data.get("user_id")
