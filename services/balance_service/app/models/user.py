from __future__ import annotations

from decimal import Decimal

from sqlalchemy import Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from services.balance_service.app.db.base import BaseModel


class User(BaseModel):
    """Ledger account of a marketplace user.

    ``id`` is the subject issued by the identity provider. The stored balance
    is authoritative and only written by the ledger store; ``version_id``
    turns every balance write into a compare-and-swap.
    """

    __tablename__ = "users"

    email: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True, default=None)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True, default=None)
    # Stored, authoritative balance (use DECIMAL for money)
    balance: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0.00"), nullable=False)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}
