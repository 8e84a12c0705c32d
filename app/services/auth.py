from datetime import datetime, timedelta

from jose import JWTError, jwt

from app.core.config import settings
from app.schemas.auth import TokenData


class AuthService:
    """Verifies bearer tokens issued by the external auth provider."""

    @staticmethod
    def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
        """Create a JWT access token (used by tests and local tooling)"""
        to_encode = data.copy()
        if expires_delta:
            expire = datetime.utcnow() + expires_delta
        else:
            expire = datetime.utcnow() + timedelta(
                minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES
            )

        to_encode.update({"exp": expire})
        return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)

    @staticmethod
    def verify_token(token: str) -> TokenData | None:
        """Verify and decode a JWT token"""
        if not token or not isinstance(token, str):
            return None
        try:
            payload = jwt.decode(
                token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM]
            )
        except JWTError:
            return None

        user_id = payload.get("sub")
        if user_id is None:
            return None
        return TokenData(user_id=str(user_id), email=payload.get("email"))
