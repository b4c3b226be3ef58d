"""
TOTP multi-factor auth

Enabling MFA stores a fresh base32 secret and ten single-use backup codes;
the flag only flips once the user proves the authenticator works. A backup
code is consumed with an atomic $pull, so it cannot be used twice.
"""
import base64
import io
import secrets
from typing import Any, Dict, List, Optional

import pyotp
import qrcode
import qrcode.image.svg
from pymongo.database import Database

from database import now, to_object_id
from errors import NotFoundError, ValidationError

ISSUER = "Ecommerce App"
BACKUP_CODE_COUNT = 10


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> List[str]:
    codes = set()
    while len(codes) < count:
        codes.add(secrets.token_hex(4))
    return sorted(codes)


def qr_data_url(data: str) -> str:
    img = qrcode.make(data, image_factory=qrcode.image.svg.SvgPathImage)
    buf = io.BytesIO()
    img.save(buf)
    return "data:image/svg+xml;base64," + base64.b64encode(buf.getvalue()).decode()


class MfaService:
    def __init__(self, db: Database):
        self.users = db["user"]

    def _user(self, user_id: str) -> Dict[str, Any]:
        user = self.users.find_one({"_id": to_object_id(user_id, "User")})
        if not user:
            raise NotFoundError("User not found")
        return user

    @staticmethod
    def _token_ok(user: Dict[str, Any], token: Optional[str]) -> bool:
        secret = user.get("mfa_secret")
        if not token or not secret:
            return False
        return pyotp.TOTP(secret).verify(token, valid_window=1)

    def _consume_backup_code(self, user: Dict[str, Any], code: Optional[str]) -> bool:
        if not code:
            return False
        result = self.users.update_one(
            {"_id": user["_id"], "mfa_backup_codes": code},
            {"$pull": {"mfa_backup_codes": code}},
        )
        return result.modified_count == 1

    def _challenge(self, user: Dict[str, Any], token: Optional[str], backup_code: Optional[str]) -> None:
        if self._token_ok(user, token):
            return
        if self._consume_backup_code(user, backup_code):
            return
        raise ValidationError("Invalid token or backup code")

    def enable(self, user_id: str) -> Dict[str, Any]:
        user = self._user(user_id)
        secret = pyotp.random_base32()
        codes = generate_backup_codes()
        self.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"mfa_secret": secret, "mfa_backup_codes": codes, "updated_at": now()}},
        )
        otpauth_url = pyotp.TOTP(secret).provisioning_uri(name=user["email"], issuer_name=ISSUER)
        return {
            "qr_code": qr_data_url(otpauth_url),
            "otpauth_url": otpauth_url,
            "backup_codes": codes,
            "message": "Scan the QR code with your authenticator app and verify with the generated token",
        }

    def verify_and_enable(self, user_id: str, token: str) -> None:
        user = self._user(user_id)
        if not user.get("mfa_secret"):
            raise ValidationError("MFA setup has not been started")
        if not self._token_ok(user, token):
            raise ValidationError("Invalid token")
        self.users.update_one({"_id": user["_id"]}, {"$set": {"mfa_enabled": True, "updated_at": now()}})

    def disable(self, user_id: str, token: Optional[str], backup_code: Optional[str]) -> None:
        user = self._user(user_id)
        self._challenge(user, token, backup_code)
        self.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"mfa_enabled": False, "mfa_secret": None, "mfa_backup_codes": [], "updated_at": now()}},
        )

    def verify(self, user_id: str, token: Optional[str], backup_code: Optional[str]) -> None:
        self._challenge(self._user(user_id), token, backup_code)
