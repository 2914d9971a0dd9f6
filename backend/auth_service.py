"""Supabase Auth access token verification"""
import os
import logging
import secrets
import string
from datetime import datetime, timezone
from typing import Optional
from pathlib import Path
from dotenv import load_dotenv
import jwt
from pydantic import BaseModel

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

JWT_SECRET = (os.environ.get('SUPABASE_JWT_SECRET') or '').strip()
if not JWT_SECRET:
    raise RuntimeError("SUPABASE_JWT_SECRET environment variable is required")

JWT_ALGORITHM = "HS256"
JWT_AUDIENCE = "authenticated"
TEMP_PASSWORD_LENGTH = 16


class TokenData(BaseModel):
    user_id: str
    email: Optional[str] = None
    role: Optional[str] = None
    exp: datetime


def verify_token(token: str) -> Optional[TokenData]:
    """Verify and decode a Supabase access token"""
    try:
        payload = jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
            audience=JWT_AUDIENCE,
        )
        return TokenData(
            user_id=payload["sub"],
            email=payload.get("email"),
            role=payload.get("role"),
            exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc)
        )
    except jwt.ExpiredSignatureError:
        logger.warning("Token expired")
        return None
    except (jwt.InvalidTokenError, KeyError) as e:
        logger.warning(f"Invalid token: {str(e)}")
        return None


def parse_bearer(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an 'Authorization: Bearer <token>' header value."""
    if not authorization:
        return None
    try:
        scheme, token = authorization.split()
    except ValueError:
        return None
    if scheme.lower() != "bearer":
        return None
    return token


def generate_temporary_password(length: int = TEMP_PASSWORD_LENGTH) -> str:
    """Random password for accounts created without one."""
    alphabet = string.ascii_letters + string.digits
    return ''.join(secrets.choice(alphabet) for _ in range(length))
