import time, jwt, bcrypt
from typing import Dict, Optional
from common.error_handling import ValidationFailed
from common.settings import Settings, settings as default_settings

ALGO = "HS256"
BCRYPT_MAX_BYTES = 72

def mint_user_jwt(user_id: int, claims: Optional[Dict] = None, settings: Settings = default_settings) -> str:
    now = int(time.time())
    payload = {
        "iss": settings.jwt_issuer,
        "sub": str(user_id),
        "iat": now,
        "exp": now + settings.jwt_ttl_seconds,
        **(claims or {}),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGO)

def verify_token(token: str, settings: Settings = default_settings) -> Dict:
    options = {"require": ["exp", "iat", "iss", "sub"]}
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[ALGO],
        options=options,
        issuer=settings.jwt_issuer,
    )

def hash_password(password: str) -> str:
    secret = password.encode("utf-8")
    if len(secret) > BCRYPT_MAX_BYTES:
        raise ValidationFailed(f"password must be at most {BCRYPT_MAX_BYTES} bytes", field="password")
    return bcrypt.hashpw(secret, bcrypt.gensalt()).decode("ascii")

def check_password(password: str, encoded: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), encoded.encode("ascii"))
    except ValueError:
        # not a bcrypt hash, or a password bcrypt refuses
        return False
