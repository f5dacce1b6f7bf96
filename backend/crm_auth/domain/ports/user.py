from __future__ import annotations

from typing import Protocol


class UserData(Protocol):
    id: str
    email: str
    password_hash: str
    is_active: bool


class UserPort(Protocol):
    async def get_by_id(self, user_id: str) -> UserData | None:
        ...

    async def get_by_email(self, email: str) -> UserData | None:
        ...
