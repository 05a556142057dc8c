"""Repository for billing database operations."""

from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.billing.models import Recording, RecordingStatus, User


class UserRepository:
    """Repository for user operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, user_id: int) -> Optional[User]:
        """Get user by ID."""
        result = await self.session.execute(
            select(User).where(User.id == user_id)
        )
        return result.scalar_one_or_none()

    async def create(self, email: str, username: str) -> User:
        """Create a new user."""
        user = User(email=email, username=username)
        self.session.add(user)
        await self.session.commit()
        await self.session.refresh(user)
        return user

    async def get_with_customer(self) -> list[User]:
        """Get every user linked to a Stripe customer."""
        result = await self.session.execute(
            select(User)
            .where(User.stripe_customer_id.is_not(None))
            .order_by(User.id)
        )
        return list(result.scalars().all())

    async def reload(self, user: User) -> User:
        """Re-read a user's columns from the database."""
        await self.session.refresh(user)
        return user

    async def link_customer(
        self,
        user_id: int,
        customer_id: str,
        previous_customer_id: Optional[str],
    ) -> bool:
        """Point a user at a Stripe customer if nobody else got there first.

        The update only applies while the stored customer id still equals
        ``previous_customer_id``. Moving to a different customer also drops
        the subscription pointer, which belonged to the old customer.

        Args:
            user_id: User to update
            customer_id: Customer id to store
            previous_customer_id: Value the caller last observed

        Returns:
            True if this call wrote the id, False if a concurrent writer won
        """
        if previous_customer_id is None:
            condition = User.stripe_customer_id.is_(None)
        else:
            condition = User.stripe_customer_id == previous_customer_id

        result = await self.session.execute(
            update(User)
            .where(User.id == user_id, condition)
            .values(stripe_customer_id=customer_id, stripe_subscription_id=None)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount == 1

    async def set_subscription_pointer(
        self,
        user: User,
        subscription_id: Optional[str],
    ) -> User:
        """Store the canonical subscription id for a user."""
        await self.session.execute(
            update(User)
            .where(User.id == user.id)
            .values(stripe_subscription_id=subscription_id)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        await self.session.refresh(user)
        return user


class RecordingRepository:
    """Repository for recording (usage event) operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        user_id: int,
        title: str,
        word_count: int = 0,
        duration: int = 0,
        recorded_at: Optional[datetime] = None,
        status: str = RecordingStatus.UPLOADED.value,
    ) -> Recording:
        """Append a recording."""
        recording = Recording(
            user_id=user_id,
            title=title,
            word_count=word_count,
            duration=duration,
            status=status,
        )
        if recorded_at is not None:
            recording.recorded_at = recorded_at
        self.session.add(recording)
        await self.session.commit()
        await self.session.refresh(recording)
        return recording

    async def get_by_id(self, recording_id: int) -> Optional[Recording]:
        """Get recording by ID."""
        result = await self.session.execute(
            select(Recording).where(Recording.id == recording_id)
        )
        return result.scalar_one_or_none()

    async def get_in_window(
        self,
        user_id: int,
        start: datetime,
        end: datetime,
    ) -> list[Recording]:
        """Get a user's recordings with ``start <= recorded_at < end``.

        Inactive recordings are included. Ordered by time, then id, so
        recordings sharing a timestamp keep a fixed order.
        """
        result = await self.session.execute(
            select(Recording)
            .where(
                Recording.user_id == user_id,
                Recording.recorded_at >= start,
                Recording.recorded_at < end,
            )
            .order_by(Recording.recorded_at, Recording.id)
        )
        return list(result.scalars().all())

    async def deactivate(self, recording_id: int) -> Optional[Recording]:
        """Mark a recording inactive."""
        recording = await self.get_by_id(recording_id)
        if not recording:
            return None
        recording.is_active = False
        await self.session.commit()
        await self.session.refresh(recording)
        return recording
