import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from config import Settings, settings as default_settings
from errors import AuthError

pwd_context = CryptContext(
    schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=default_settings.bcrypt_rounds
)


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def _encode(user_id: str, token_type: str, secret: str, expires_delta: timedelta, algorithm: str) -> str:
    to_encode = {
        "sub": user_id,
        "type": token_type,
        "jti": uuid.uuid4().hex,
        "exp": datetime.now(timezone.utc) + expires_delta,
    }
    return jwt.encode(to_encode, secret, algorithm=algorithm)


def create_access_token(user_id: str, settings: Settings) -> str:
    return _encode(
        user_id, "access", settings.jwt_secret,
        timedelta(minutes=settings.access_token_expire_minutes), settings.jwt_algorithm,
    )


def create_refresh_token(user_id: str, settings: Settings) -> str:
    return _encode(
        user_id, "refresh", settings.jwt_refresh_secret,
        timedelta(days=settings.refresh_token_expire_days), settings.jwt_algorithm,
    )


def create_token_pair(user_id: str, settings: Settings) -> Dict[str, str]:
    return {
        "access_token": create_access_token(user_id, settings),
        "refresh_token": create_refresh_token(user_id, settings),
    }


def decode_token(token: str, token_type: str, settings: Settings) -> str:
    """Return the subject of a valid token of the given type, else raise AuthError."""
    secret = settings.jwt_secret if token_type == "access" else settings.jwt_refresh_secret
    try:
        payload = jwt.decode(token, secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise AuthError()
    user_id: Optional[str] = payload.get("sub")
    if user_id is None or payload.get("type") != token_type:
        raise AuthError()
    return user_id


def can_mutate(actor: Mapping[str, Any], resource: Mapping[str, Any]) -> bool:
    """Admins may change anything; everyone else only what they own."""
    if actor.get("role") == "admin":
        return True
    owner_id = resource.get("owner_id")
    return owner_id is not None and str(owner_id) == str(actor.get("id"))
