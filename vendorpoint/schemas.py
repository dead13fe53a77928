from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from vendorpoint.models import CostStatus, OrderSource, RecurrencePattern, WalletType


class WalletCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "client_id": 1,
                "name": "Main cash drawer",
                "wallet_type": "business",
                "currency": "EGP",
                "initial_balance": "250.00",
                "is_default": True,
            }
        }
    }
    client_id: int
    name: str = Field(min_length=1)
    wallet_type: WalletType = WalletType.CUSTOM
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    initial_balance: Decimal = Decimal("0")
    color: Optional[str] = None
    description: Optional[str] = None
    is_default: bool = False


class PostingCreate(BaseModel):
    amount: Decimal
    source_ref: str = Field(min_length=1, max_length=120)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    category: str = "general"
    description: Optional[str] = None


class TransferCreate(BaseModel):
    from_wallet_id: int
    to_wallet_id: int
    amount: Decimal = Field(gt=0)
    reference: Optional[str] = None
    description: Optional[str] = None


class CostCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "client_id": 1,
                "title": "Shop rent",
                "amount": "100.00",
                "category": "rent",
                "due_date": "2024-01-31",
                "is_recurring": True,
                "recurrence_type": "monthly",
                "recurrence_end_date": "2024-12-31",
            }
        }
    }
    client_id: int
    wallet_id: Optional[int] = None
    title: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    category: str = Field(min_length=1)
    payment_method: str = "cash"
    status: CostStatus = CostStatus.PENDING
    due_date: Optional[date] = None
    description: Optional[str] = None
    is_recurring: bool = False
    recurrence_type: Optional[RecurrencePattern] = None
    recurrence_end_date: Optional[date] = None


class CostReopen(BaseModel):
    due_date: date


class ReceiptCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "client_id": None,
                "customer_name": "Alice",
                "customer_email": "alice@example.com",
                "total": "50.00",
                "payment_method": "cod",
                "source": "website",
            }
        }
    }
    client_id: Optional[int] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_address: Optional[str] = None
    subtotal: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    total: Decimal = Field(ge=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    payment_method: Optional[str] = None
    source: OrderSource = OrderSource.POS
    notes: Optional[str] = None


class BookingCreate(BaseModel):
    client_id: int
    customer_id: Optional[int] = None
    service_id: Optional[int] = None
    staff_id: Optional[int] = None
    booking_date: date
    booking_time: Optional[str] = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    duration: Optional[int] = Field(default=None, gt=0)
    price: Optional[Decimal] = Field(default=None, ge=0)
    notes: Optional[str] = None
    is_recurring: bool = False
    recurring_pattern: Optional[RecurrencePattern] = None
    recurring_end_date: Optional[date] = None


class TickRequest(BaseModel):
    as_of: Optional[date] = None
    max_workers: Optional[int] = Field(default=None, ge=1, le=32)
