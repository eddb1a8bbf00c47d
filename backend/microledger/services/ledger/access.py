"""Who is acting, and whether they may touch a client's loans."""

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from microledger.models.user import ClientManager, User, UserRole
from microledger.services.ledger.exceptions import ForbiddenError, UserNotFoundError


@dataclass(frozen=True)
class Actor:
    """The authenticated user performing an operation.

    Passed explicitly to every mutating service call instead of being read
    from request context.
    """

    user_id: int
    role: UserRole

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(user_id=user.id, role=user.role)


async def manages_client(db: AsyncSession, user_id: int, client_id: int) -> bool:
    result = await db.execute(
        select(ClientManager.id).where(
            ClientManager.client_id == client_id,
            ClientManager.user_id == user_id,
            ClientManager.deleted_at.is_(None),
        )
    )
    return result.first() is not None


async def ensure_client_access(db: AsyncSession, actor: Actor, client_id: int) -> None:
    """MANAGERs need an active assignment to the client; higher roles pass."""
    if actor.role != UserRole.MANAGER:
        return
    if not await manages_client(db, actor.user_id, client_id):
        raise ForbiddenError(f"User {actor.user_id} has no access to client {client_id}")


async def get_user(db: AsyncSession, user_id: int) -> User:
    user = await db.get(User, user_id)
    if user is None or user.deleted_at is not None:
        raise UserNotFoundError(f"User {user_id} not found")
    return user
