from sqlalchemy import String, Numeric, Enum, Text, Date, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column
from enum import Enum as PyEnum
from datetime import date
from decimal import Decimal
from rentledger.db import Base
from rentledger.models.common import IdMixin, TSMMixin

# ── Enums ───────────────────────────────────────────────────────────────────
class MergeState(str, PyEnum):
    NONE = "none"
    ABSORBED = "absorbed"
    MERGED = "merged"

class PaymentStatus(str, PyEnum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"

class PayMethod(str, PyEnum):
    CASH = "Cash"
    UPI = "UPI"
    BANK_TRANSFER = "Bank Transfer"
    CHEQUE = "Cheque"
    CARD = "Card"
    OTHER = "Other"

# ── Orders ───────────────────────────────────────────────────────────────────
class OrderDoc(Base, IdMixin, TSMMixin):
    """One order document. The full record lives in `body`; the columns beside it
    are copies kept for filtering and lookups."""
    __tablename__ = "order_doc"
    display_code: Mapped[str | None] = mapped_column(String(60), index=True)
    merge_state: Mapped[MergeState] = mapped_column(
        Enum(MergeState, values_callable=lambda e: [m.value for m in e]), default=MergeState.NONE
    )
    merged_into: Mapped[str | None] = mapped_column(String(60))
    body: Mapped[dict] = mapped_column(JSON)

# ── Payments ─────────────────────────────────────────────────────────────────
class PaymentRecord(Base, IdMixin, TSMMixin):
    __tablename__ = "payment"
    # no FK: after a merge, payments keep pointing at absorbed order ids
    order_id: Mapped[str] = mapped_column(String(36))
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    paid_on: Mapped[date] = mapped_column(Date)
    method: Mapped[PayMethod] = mapped_column(Enum(PayMethod, values_callable=lambda e: [m.value for m in e]))
    transaction_ref: Mapped[str | None] = mapped_column(String(120))
    notes: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (Index("ix_payment_order_id", "order_id"),)

# ── Audit ────────────────────────────────────────────────────────────────────
class AuditLog(Base, IdMixin, TSMMixin):
    __tablename__ = "audit_log"
    entity: Mapped[str] = mapped_column(String(60))
    entity_id: Mapped[str] = mapped_column(String(36))
    action: Mapped[str] = mapped_column(String(60))
    reason: Mapped[str | None] = mapped_column(Text)
    before: Mapped[str | None] = mapped_column(Text)
    after: Mapped[str | None] = mapped_column(Text)
