from pydantic import BaseModel


class TokenData(BaseModel):
    """Claims read from an auth provider bearer token."""

    user_id: str
    email: str | None = None
