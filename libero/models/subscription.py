"""Subscription model – one row per paid period, with upgrade lineage."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from libero.db.base import Base, new_id
from libero.utils.dates import utcnow
from libero.utils.enums import SubscriptionStatus


@dataclass(frozen=True)
class UpgradeOrigin:
    """Where an upgraded subscription came from.

    Refunding the upgrade restores ``previous_pack_id``; the lineage of
    ``previous_subscription_id`` is carried over so a later refund can
    unwind one more step.
    """

    previous_pack_id: str
    previous_subscription_id: str | None = None

    def restoration_target(self) -> str:
        """Pack a refund of this upgrade falls back to."""
        return self.previous_pack_id


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    pack_id: Mapped[str] = mapped_column(ForeignKey("packs.id"), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=SubscriptionStatus.ACTIVE.value, nullable=False
    )
    current_period_start: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    current_period_end: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    stripe_subscription_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )
    cancel_at_period_end: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Lineage columns; use ``upgrade_origin`` instead of touching these.
    is_upgrade: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    previous_pack_id: Mapped[str | None] = mapped_column(
        ForeignKey("packs.id"), nullable=True
    )
    upgrade_from_subscription_id: Mapped[str | None] = mapped_column(
        String(36), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        Index("idx_sub_user_status_end", "user_id", "status", "current_period_end"),
        Index("idx_sub_status_end", "status", "current_period_end"),
    )

    @property
    def upgrade_origin(self) -> UpgradeOrigin | None:
        if not self.is_upgrade or not self.previous_pack_id:
            return None
        return UpgradeOrigin(
            previous_pack_id=self.previous_pack_id,
            previous_subscription_id=self.upgrade_from_subscription_id,
        )

    @upgrade_origin.setter
    def upgrade_origin(self, origin: UpgradeOrigin | None) -> None:
        self.is_upgrade = origin is not None
        self.previous_pack_id = origin.previous_pack_id if origin else None
        self.upgrade_from_subscription_id = (
            origin.previous_subscription_id if origin else None
        )

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE.value

    def __repr__(self) -> str:
        return (
            f"<Subscription id={self.id} user={self.user_id} pack={self.pack_id} "
            f"status={self.status} end={self.current_period_end}>"
        )
