"""Transaction repository – the append-only payment ledger."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from libero.models.transaction import Transaction
from libero.utils.enums import TransactionStatus


class TransactionRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._s = session

    async def create(
        self,
        user_id: str,
        amount: Decimal,
        currency: str,
        status: TransactionStatus,
        subscription_id: str | None = None,
        payment_intent_id: str | None = None,
        invoice_id: str | None = None,
        checkout_session_id: str | None = None,
        description: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> Transaction:
        tx = Transaction(
            user_id=user_id,
            subscription_id=subscription_id,
            amount=amount,
            currency=currency.upper(),
            status=status.value,
            stripe_payment_intent_id=payment_intent_id,
            stripe_invoice_id=invoice_id,
            checkout_session_id=checkout_session_id,
            description=description,
            extra=extra,
        )
        self._s.add(tx)
        await self._s.flush()
        return tx

    async def get_by_payment_intent(self, payment_intent_id: str) -> Transaction | None:
        """Newest ledger row for a payment intent."""
        result = await self._s.execute(
            select(Transaction)
            .where(Transaction.stripe_payment_intent_id == payment_intent_id)
            .order_by(Transaction.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_by_checkout_session(self, checkout_session_id: str) -> Transaction | None:
        result = await self._s.execute(
            select(Transaction).where(
                Transaction.checkout_session_id == checkout_session_id
            )
        )
        return result.scalar_one_or_none()

    async def get_by_invoice(
        self, invoice_id: str, status: TransactionStatus
    ) -> Transaction | None:
        result = await self._s.execute(
            select(Transaction)
            .where(
                Transaction.stripe_invoice_id == invoice_id,
                Transaction.status == status.value,
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def mark_refunded(self, transaction_id: str) -> bool:
        """``COMPLETED -> REFUNDED``, the only mutation the ledger allows."""
        result = await self._s.execute(
            update(Transaction)
            .where(
                Transaction.id == transaction_id,
                Transaction.status == TransactionStatus.COMPLETED.value,
            )
            .values(status=TransactionStatus.REFUNDED.value)
        )
        return (result.rowcount or 0) > 0
