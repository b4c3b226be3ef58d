import logging
from typing import Any, Dict, Optional

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from cache import Cache, blacklist_key
from config import Settings
from database import create_document, now, to_object_id
from errors import AuthError, ConflictError
from security import create_token_pair, decode_token, get_password_hash, verify_password

logger = logging.getLogger(__name__)


def public_user(doc: Dict[str, Any]) -> Dict[str, Any]:
    """User fields that are safe to hand to clients."""
    return {
        "id": str(doc["_id"]),
        "email": doc["email"],
        "first_name": doc.get("first_name"),
        "last_name": doc.get("last_name"),
        "role": doc.get("role", "user"),
        "is_active": doc.get("is_active", True),
        "mfa_enabled": doc.get("mfa_enabled", False),
    }


class AuthService:
    def __init__(self, db: Database, cache: Cache, settings: Settings):
        self.db = db
        self.users = db["user"]
        self.cache = cache
        self.settings = settings

    def register(self, email: str, password: str, first_name: str, last_name: str) -> Dict[str, Any]:
        email = email.strip().lower()
        if self.users.find_one({"email": email}):
            raise ConflictError("Email already registered")
        try:
            user_id = create_document(self.db, "user", {
                "email": email,
                "password_hash": get_password_hash(password),
                "first_name": first_name.strip(),
                "last_name": last_name.strip(),
                "role": "user",
                "is_active": True,
                "refresh_token": None,
                "mfa_enabled": False,
                "mfa_secret": None,
                "mfa_backup_codes": [],
                "last_active": now(),
            })
        except DuplicateKeyError:
            raise ConflictError("Email already registered")
        return self._issue(user_id)

    def login(self, email: str, password: str) -> Dict[str, Any]:
        user = self.users.find_one({"email": email.strip().lower()})
        if not user or not verify_password(password, user.get("password_hash", "")):
            raise AuthError("Invalid credentials")
        if not user.get("is_active", True):
            raise AuthError("Account is deactivated")
        return self._issue(str(user["_id"]))

    def refresh(self, refresh_token: str) -> Dict[str, str]:
        user_id = decode_token(refresh_token, "refresh", self.settings)
        user = self.users.find_one({"_id": to_object_id(user_id, "User")})
        if not user or user.get("refresh_token") != refresh_token:
            raise AuthError("Invalid refresh token")
        tokens = create_token_pair(user_id, self.settings)
        self.users.update_one({"_id": user["_id"]}, {"$set": {"refresh_token": tokens["refresh_token"]}})
        return tokens

    def logout(self, user_id: str, access_token: Optional[str]) -> None:
        if access_token:
            self.cache.set(blacklist_key(access_token), "true", ttl=self.settings.blacklist_ttl)
        self.users.update_one(
            {"_id": to_object_id(user_id, "User")},
            {"$set": {"refresh_token": None, "updated_at": now()}},
        )
        logger.info("User %s logged out", user_id)

    def is_blacklisted(self, access_token: str) -> bool:
        return self.cache.exists(blacklist_key(access_token))

    def authenticate(self, access_token: str) -> Dict[str, Any]:
        if self.is_blacklisted(access_token):
            raise AuthError("Token is no longer valid")
        user_id = decode_token(access_token, "access", self.settings)
        user = self.users.find_one({"_id": to_object_id(user_id, "User")})
        if not user:
            raise AuthError("User no longer exists")
        if not user.get("is_active", True):
            raise AuthError("User account is deactivated")
        self.users.update_one({"_id": user["_id"]}, {"$set": {"last_active": now()}})
        return public_user(user)

    def _issue(self, user_id: str) -> Dict[str, Any]:
        # one active session per user: a new refresh token replaces the old one
        tokens = create_token_pair(user_id, self.settings)
        oid = to_object_id(user_id, "User")
        self.users.update_one({"_id": oid}, {"$set": {"refresh_token": tokens["refresh_token"]}})
        user = self.users.find_one({"_id": oid})
        return {"user": public_user(user), **tokens}
