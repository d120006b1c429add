"""
Bearer-token authentication and the user registry.

Tokens are itsdangerous-signed `{"sub": user_id}` payloads with a max age.
Users live in `<data_dir>/users.json` with bcrypt password hashes.
"""

import json
import os
import secrets
import threading
import time
from typing import Any, Dict, Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from passlib.context import CryptContext


pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


class AuthError(Exception):
    def __init__(self, message: str, status_code: int = 401):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    try:
        return pwd_context.verify(password, hashed)
    except ValueError:
        # unrecognised or malformed stored hash
        return False


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


class AuthService:
    def __init__(self, secret: str, data_dir: str, max_age_seconds: int = 60 * 60 * 24 * 7):
        self.serializer = URLSafeTimedSerializer(secret, salt="finbank-auth")
        self.max_age_seconds = max_age_seconds
        self.users_path = os.path.join(data_dir, "users.json")
        self._lock = threading.Lock()

    # ----------------------------
    # Storage helpers
    # ----------------------------
    def _read_users(self) -> Dict[str, Any]:
        if not os.path.exists(self.users_path):
            return {"items": []}
        with open(self.users_path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _write_users(self, payload: Dict[str, Any]) -> None:
        os.makedirs(os.path.dirname(self.users_path), exist_ok=True)
        tmp_path = f"{self.users_path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        os.replace(tmp_path, self.users_path)

    @staticmethod
    def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
        return {"id": user["id"], "name": user.get("name"), "email": user.get("email"), "createdAt": user.get("created_at")}

    # ----------------------------
    # Tokens
    # ----------------------------
    def issue_token(self, user_id: str) -> str:
        return self.serializer.dumps({"sub": user_id, "nonce": secrets.token_hex(4), "iat": int(time.time())})

    def verify_token(self, token: Optional[str]) -> str:
        if not token:
            raise AuthError("Unauthorized")
        try:
            data = self.serializer.loads(token, max_age=self.max_age_seconds)
        except SignatureExpired:
            raise AuthError("Session expired")
        except BadSignature:
            raise AuthError("Invalid Token")
        user_id = data.get("sub") if isinstance(data, dict) else None
        if not user_id:
            raise AuthError("Invalid Token")
        return user_id

    # ----------------------------
    # Users
    # ----------------------------
    def register(self, name: str, email: str, password: str) -> Dict[str, Any]:
        email = email.strip().lower()
        with self._lock:
            store = self._read_users()
            if any(u["email"] == email for u in store["items"]):
                raise AuthError("User already exists", status_code=422)
            user = {
                "id": f"usr_{secrets.token_hex(6)}",
                "name": name,
                "email": email,
                "password": hash_password(password),
                "created_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            }
            store["items"].append(user)
            self._write_users(store)
        return user

    def login(self, email: str, password: str) -> Dict[str, Any]:
        email = email.strip().lower()
        user = next((u for u in self._read_users()["items"] if u["email"] == email), None)
        if not user or not verify_password(password, user["password"]):
            raise AuthError("Invalid credentials")
        return user

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        return next((u for u in self._read_users()["items"] if u["id"] == user_id), None)
