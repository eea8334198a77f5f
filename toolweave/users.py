from __future__ import annotations

from fastapi import Depends, Header
from pydantic import BaseModel

from toolweave.config import Config, get_config
from toolweave.errors import ChatError

ANONYMOUS_USER_ID = "anonymous"


class User(BaseModel):
    user_id: str
    is_anonymous: bool = False


def get_current_user(
    x_user_id: str | None = Header(None),
    config: Config = Depends(get_config),
) -> User:
    """Trusts the ``X-User-Id`` header set by the fronting gateway."""
    if x_user_id:
        return User(user_id=x_user_id)
    if config.allow_anonymous:
        return User(user_id=ANONYMOUS_USER_ID, is_anonymous=True)
    raise ChatError("unauthorized:chat")
