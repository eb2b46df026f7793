"""Pydantic request/response schemas used by the API.

Schemas keep API input/output shapes stable and provide validation for
controller handlers and tests. Update schemas make every field optional;
controllers pass `model_dump(exclude_unset=True)` to the services so only
the fields a client actually sent are touched.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Role = Literal["admin", "receptionist", "trainer"]
ClientStatus = Literal["active", "inactive", "suspended"]
MembershipStatus = Literal["active", "upcoming_expiry", "expired", "cancelled"]
PaymentMethod = Literal["cash", "transfer", "card", "other", "mixed"]
PaymentStatus = Literal["completed", "pending", "cancelled", "refunded"]
ClassStatus = Literal["active", "inactive", "suspended"]
ProductCategory = Literal["supplement", "equipment", "apparel", "beverage", "other"]
InvoiceItemType = Literal["membership", "product", "class", "service", "other"]

HHMM = r"^([01]\d|2[0-3]):[0-5]\d$"
MONTH = r"^\d{4}-(0[1-9]|1[0-2])$"


class RegisterIn(BaseModel):
    """Payload for gym sign-up: the gym and its first admin."""
    gym_name: str = Field(min_length=1)
    email: EmailStr
    name: str = Field(min_length=1)
    password: str = Field(min_length=6)


class LoginIn(BaseModel):
    email: str
    password: str


class TokenOut(BaseModel):
    """Authentication response containing an access token."""
    access_token: str
    token_type: str = "bearer"


class AccountIn(BaseModel):
    email: EmailStr
    name: str = Field(min_length=1)
    password: str = Field(min_length=6)
    role: Role = "receptionist"
    permissions: Optional[Dict[str, Any]] = None


class AccountUpdate(BaseModel):
    name: Optional[str] = None
    role: Optional[Role] = None
    permissions: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None
    password: Optional[str] = Field(default=None, min_length=6)


class GymUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    opening_time: Optional[str] = Field(default=None, pattern=HHMM)
    closing_time: Optional[str] = Field(default=None, pattern=HHMM)
    timezone: Optional[str] = None
    payment_methods: Optional[List[PaymentMethod]] = None


class ClientIn(BaseModel):
    """A new gym member. Only `name` is required."""
    name: str = Field(min_length=1)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    document_id: Optional[str] = None
    birth_date: Optional[date] = None
    address: Optional[str] = None
    notes: Optional[str] = None
    initial_weight: Optional[float] = Field(default=None, gt=0)
    status: ClientStatus = "active"


class ClientUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    document_id: Optional[str] = None
    birth_date: Optional[date] = None
    address: Optional[str] = None
    notes: Optional[str] = None
    initial_weight: Optional[float] = Field(default=None, gt=0)
    status: Optional[ClientStatus] = None


class PlanIn(BaseModel):
    name: str = Field(min_length=1)
    price: float = Field(ge=0)
    duration_days: int = Field(ge=1)
    description: Optional[str] = None
    includes: Dict[str, Any] = Field(default_factory=dict)
    restrictions: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    is_featured: bool = False
    sort_order: int = 0


class PlanUpdate(BaseModel):
    name: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    duration_days: Optional[int] = Field(default=None, ge=1)
    description: Optional[str] = None
    includes: Optional[Dict[str, Any]] = None
    restrictions: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None
    sort_order: Optional[int] = None


class MembershipIn(BaseModel):
    """Enroll a client in a plan.

    `end_date` defaults to `start_date + periods * duration_days`.
    """
    client_id: int
    membership_type_id: int
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    periods: int = Field(default=1, ge=1)


class MembershipUpdate(BaseModel):
    membership_type_id: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    status: Optional[MembershipStatus] = None


class SplitPaymentIn(BaseModel):
    cash: float = Field(ge=0)
    transfer: float = Field(ge=0)


class PaymentIn(BaseModel):
    """A payment; `payment_month` (YYYY-MM) defaults to the payment date's month."""
    client_id: Optional[int] = None
    membership_id: Optional[int] = None
    invoice_id: Optional[int] = None
    amount: float = Field(gt=0)
    method: Optional[PaymentMethod] = None
    payment_date: Optional[date] = None
    status: Optional[PaymentStatus] = None
    notes: Optional[str] = None
    is_partial: bool = False
    payment_month: Optional[str] = Field(default=None, pattern=MONTH)
    split_payment: Optional[SplitPaymentIn] = None


class PaymentUpdate(BaseModel):
    amount: Optional[float] = Field(default=None, gt=0)
    method: Optional[PaymentMethod] = None
    payment_date: Optional[date] = None
    status: Optional[PaymentStatus] = None
    notes: Optional[str] = None
    is_partial: Optional[bool] = None
    payment_month: Optional[str] = Field(default=None, pattern=MONTH)
    split_payment: Optional[SplitPaymentIn] = None


class TrainerIn(BaseModel):
    name: str = Field(min_length=1)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    specialization: Optional[str] = None
    bio: Optional[str] = None
    is_active: bool = True


class TrainerUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    specialization: Optional[str] = None
    bio: Optional[str] = None
    is_active: Optional[bool] = None


class ClassIn(BaseModel):
    """A recurring class; `days_of_week` uses 0 for Sunday through 6."""
    name: str = Field(min_length=1)
    trainer_id: int
    description: Optional[str] = None
    days_of_week: List[int] = Field(default_factory=list)
    start_time: str = Field(pattern=HHMM)
    duration: int = Field(gt=0)
    capacity: int = Field(gt=0)
    requires_membership: bool = False
    additional_price: float = Field(default=0.0, ge=0)
    color: str = "#3b82f6"
    status: ClassStatus = "active"


class ClassUpdate(BaseModel):
    name: Optional[str] = None
    trainer_id: Optional[int] = None
    description: Optional[str] = None
    days_of_week: Optional[List[int]] = None
    start_time: Optional[str] = Field(default=None, pattern=HHMM)
    duration: Optional[int] = Field(default=None, gt=0)
    capacity: Optional[int] = Field(default=None, gt=0)
    requires_membership: Optional[bool] = None
    additional_price: Optional[float] = Field(default=None, ge=0)
    color: Optional[str] = None
    status: Optional[ClassStatus] = None


class EnrollIn(BaseModel):
    client_id: int


class AttendanceIn(BaseModel):
    client_id: int
    attendance_date: date
    present: bool = True
    notes: Optional[str] = None


class ProductIn(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    price: float = Field(ge=0)
    category: Optional[ProductCategory] = None
    sku: Optional[str] = None
    stock: int = Field(default=0, ge=0)
    low_stock_alert: int = Field(default=5, ge=0)
    is_active: bool = True


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    category: Optional[ProductCategory] = None
    sku: Optional[str] = None
    stock: Optional[int] = Field(default=None, ge=0)
    low_stock_alert: Optional[int] = Field(default=None, ge=0)
    is_active: Optional[bool] = None


class InvoiceItemIn(BaseModel):
    """One invoice line. Product, plan and class lines may omit the price and description."""
    item_type: InvoiceItemType
    item_id: Optional[int] = None
    description: Optional[str] = None
    quantity: int = Field(default=1, ge=1)
    unit_price: Optional[float] = Field(default=None, ge=0)
    discount: float = Field(default=0.0, ge=0)


class InvoiceIn(BaseModel):
    client_id: Optional[int] = None
    items: List[InvoiceItemIn] = Field(min_length=1)
    tax_rate: float = Field(default=0.0, ge=0, le=1)
    discount: float = Field(default=0.0, ge=0)
    notes: Optional[str] = None
    invoice_date: Optional[datetime] = None


class InvoicePayIn(BaseModel):
    """Payment against an invoice; `amount` defaults to the outstanding balance."""
    amount: Optional[float] = Field(default=None, gt=0)
    method: Optional[PaymentMethod] = None
    payment_date: Optional[date] = None
    notes: Optional[str] = None
    split_payment: Optional[SplitPaymentIn] = None


class CashOpenIn(BaseModel):
    opening_cash: float = Field(ge=0)
    notes: Optional[str] = None


class CashCloseIn(BaseModel):
    closing_cash: float = Field(ge=0)
    notes: Optional[str] = None
