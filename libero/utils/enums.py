"""Enums used across the application."""

from __future__ import annotations

from enum import Enum


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class UserStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    DELETED = "DELETED"


class Language(str, Enum):
    EN = "en"
    EL = "el"

    @classmethod
    def of(cls, value: str | None) -> Language:
        """Anything other than Greek falls back to English."""
        return cls.EL if value == cls.EL.value else cls.EN


class AlertKind(str, Enum):
    CHARGE_FAILED = "charge_failed"
    DISPUTE_CREATED = "dispute_created"
    REFUND_PROCESSED = "refund_processed"
