import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from vendorpoint.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
MONEY = Numeric(15, 2)


class WalletType(str, enum.Enum):
    CUSTOM = "custom"
    BUSINESS = "business"
    PERSONAL = "personal"
    HOUSE = "house"


class TransactionType(str, enum.Enum):
    CREDIT = "credit"
    DEBIT = "debit"
    TRANSFER = "transfer"


class CostStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"


class RecurrencePattern(str, enum.Enum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class OrderSource(str, enum.Enum):
    POS = "pos"
    WEBSITE = "website"


def _enum_column(enum_cls: type[enum.Enum]) -> Enum:
    return Enum(
        enum_cls,
        native_enum=False,
        validate_strings=True,
        values_callable=lambda members: [m.value for m in members],
        length=20,
    )


class Client(Base):
    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Wallet(Base):
    __tablename__ = "wallets"
    __table_args__ = (
        Index("ix_wallets_client_active", "client_id", "is_active"),
        # at most one active house wallet
        Index(
            "uq_wallets_active_house",
            "wallet_type",
            unique=True,
            postgresql_where=text("wallet_type = 'house' AND is_active"),
            sqlite_where=text("wallet_type = 'house' AND is_active"),
        ),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    # NULL only for the house wallet that collects anonymous website orders
    client_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("clients.id"), index=True
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0.00"))
    wallet_type: Mapped[WalletType] = mapped_column(
        _enum_column(WalletType), nullable=False, default=WalletType.CUSTOM
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    color: Mapped[str] = mapped_column(String(7), nullable=False, default="#10B981")
    description: Mapped[str | None] = mapped_column(Text)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class WalletTransaction(Base):
    """One ledger entry. Rows are never updated or deleted."""

    __tablename__ = "wallet_transactions"
    __table_args__ = (
        CheckConstraint("amount <> 0", name="ck_wallet_transactions_amount_nonzero"),
        Index("ix_wallet_transactions_client_wallet", "client_id", "wallet_id"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    client_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("clients.id"))
    wallet_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("wallets.id"), nullable=False, index=True
    )
    transaction_type: Mapped[TransactionType] = mapped_column(
        _enum_column(TransactionType), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False, default="general")
    description: Mapped[str | None] = mapped_column(Text)
    reference_number: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Cost(Base):
    __tablename__ = "costs"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_costs_amount_positive"),
        Index("ix_costs_client_status", "client_id", "status"),
        Index("ix_costs_recurring_parent", "is_recurring", "parent_cost_id"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    client_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("clients.id"), nullable=False, index=True
    )
    wallet_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("wallets.id"))
    title: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    payment_method: Mapped[str] = mapped_column(Text, nullable=False, default="cash")
    status: Mapped[CostStatus] = mapped_column(
        _enum_column(CostStatus), nullable=False, default=CostStatus.PENDING
    )
    due_date: Mapped[date | None] = mapped_column(Date, index=True)
    description: Mapped[str | None] = mapped_column(Text)
    reference_number: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    recurrence_type: Mapped[RecurrencePattern | None] = mapped_column(
        _enum_column(RecurrencePattern)
    )
    recurrence_end_date: Mapped[date | None] = mapped_column(Date)
    parent_cost_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("costs.id"))
    last_generated_date: Mapped[date | None] = mapped_column(Date)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    @property
    def anchor_date(self) -> date | None:
        return self.due_date

    @property
    def parent_id(self) -> int | None:
        return self.parent_cost_id

    @property
    def pattern(self) -> RecurrencePattern | None:
        return self.recurrence_type

    @property
    def end_date(self) -> date | None:
        return self.recurrence_end_date


class Receipt(Base):
    __tablename__ = "receipts"
    __table_args__ = (
        Index("ix_receipts_client_status", "client_id", "order_status"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    client_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("clients.id"))
    receipt_number: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)
    customer_name: Mapped[str | None] = mapped_column(String(255))
    customer_email: Mapped[str | None] = mapped_column(String(255))
    customer_phone: Mapped[str | None] = mapped_column(String(50))
    customer_address: Mapped[str | None] = mapped_column(Text)
    subtotal: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0.00"))
    tax: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0.00"))
    discount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0.00"))
    # legacy column; only written through receipts.set_total together with total_amount
    total: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    payment_method: Mapped[str | None] = mapped_column(Text)
    order_status: Mapped[OrderStatus] = mapped_column(
        _enum_column(OrderStatus), nullable=False, default=OrderStatus.PENDING
    )
    source: Mapped[OrderSource] = mapped_column(
        _enum_column(OrderSource), nullable=False, default=OrderSource.POS
    )
    notes: Mapped[str | None] = mapped_column(Text)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    @property
    def is_anonymous(self) -> bool:
        return self.client_id is None


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        Index("ix_bookings_client_date", "client_id", "booking_date"),
        Index("ix_bookings_recurring_parent", "is_recurring", "parent_booking_id"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    client_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("clients.id"), nullable=False
    )
    customer_id: Mapped[int | None] = mapped_column(BigInteger)
    service_id: Mapped[int | None] = mapped_column(BigInteger)
    staff_id: Mapped[int | None] = mapped_column(BigInteger)
    booking_date: Mapped[date] = mapped_column(Date, nullable=False)
    booking_time: Mapped[str | None] = mapped_column(String(5))
    duration: Mapped[int | None] = mapped_column(Integer)
    price: Mapped[Decimal | None] = mapped_column(MONEY)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    notes: Mapped[str | None] = mapped_column(Text)
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    recurring_pattern: Mapped[RecurrencePattern | None] = mapped_column(
        _enum_column(RecurrencePattern)
    )
    recurring_end_date: Mapped[date | None] = mapped_column(Date)
    parent_booking_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("bookings.id")
    )
    last_generated_date: Mapped[date | None] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    @property
    def anchor_date(self) -> date | None:
        return self.booking_date

    @property
    def parent_id(self) -> int | None:
        return self.parent_booking_id

    @property
    def pattern(self) -> RecurrencePattern | None:
        return self.recurring_pattern

    @property
    def end_date(self) -> date | None:
        return self.recurring_end_date
