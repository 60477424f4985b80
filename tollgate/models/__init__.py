"""SQLModel data models."""

from tollgate.models.api_key import ApiKey
from tollgate.models.user import User

__all__ = [
    "ApiKey",
    "User",
]
