"""Declarative base shared by every model."""

from __future__ import annotations

import uuid

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def new_id() -> str:
    """Primary keys are UUID4 strings, generated client-side."""
    return str(uuid.uuid4())
