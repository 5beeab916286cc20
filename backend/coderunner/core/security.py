from datetime import datetime, timedelta, timezone
from jose import jwt, JWTError
from coderunner.core.config import get_settings

settings = get_settings()


def create_access_token(sub: str, minutes: int = 60) -> str:
    expire = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    payload = {"sub": sub, "exp": expire}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def decode_token(token: str) -> str | None:
    """Return the token subject, or None when the token does not verify."""
    try:
        data = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except JWTError:
        return None
    return data.get("sub")
