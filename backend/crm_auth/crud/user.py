from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.ports.user import UserData, UserPort
from ..models.user import User


async def get_user_by_id(session: AsyncSession, user_id: str) -> User | None:
    return await session.get(User, user_id)


async def get_user_by_email(session: AsyncSession, email: str) -> User | None:
    result = await session.execute(
        select(User).where(User.email == email.strip().lower())
    )
    return result.scalars().first()


async def create_user(session: AsyncSession, email: str, password_hash: str) -> User:
    user = User(email=email.strip().lower(), password_hash=password_hash)
    session.add(user)
    await session.flush()
    return user


class UserRepository(UserPort):
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, user_id: str) -> UserData | None:
        return await get_user_by_id(self._session, user_id)

    async def get_by_email(self, email: str) -> UserData | None:
        return await get_user_by_email(self._session, email)

    async def create(self, email: str, password_hash: str) -> UserData:
        return await create_user(self._session, email, password_hash)
