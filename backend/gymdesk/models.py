"""SQLModel data models.

This module defines the application's database tables using SQLModel.
Every business table carries a ``gym_id`` so repositories can scope all
reads and writes to the tenant of the authenticated account.
"""

from typing import Optional, List
from datetime import datetime, date, timezone

from sqlalchemy import Column, JSON, UniqueConstraint
from sqlmodel import SQLModel, Field, Relationship


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Gym(SQLModel, table=True):
    """A tenant. All other rows belong to exactly one gym."""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    opening_time: Optional[str] = None
    closing_time: Optional[str] = None
    timezone: str = "America/Bogota"
    logo_path: Optional[str] = None
    payment_methods: List[str] = Field(default_factory=lambda: ["cash", "transfer"], sa_column=Column(JSON, nullable=False))
    plan: str = "starter"
    status: str = "active"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class GymAccount(SQLModel, table=True):
    """A staff login for a gym.

    Fields:
    - `email`: unique login name across all gyms
    - `role`: one of `admin`, `receptionist`, `trainer`
    - `password_hash`: hashed password string (never store plaintext)
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    gym_id: int = Field(foreign_key="gym.id", index=True)
    email: str = Field(index=True, nullable=False, unique=True)
    name: str
    role: str = "receptionist"
    password_hash: str
    permissions: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Client(SQLModel, table=True):
    """A gym member."""
    id: Optional[int] = Field(default=None, primary_key=True)
    gym_id: int = Field(foreign_key="gym.id", index=True)
    name: str = Field(index=True)
    email: Optional[str] = None
    phone: Optional[str] = None
    document_id: Optional[str] = Field(default=None, index=True)
    birth_date: Optional[date] = None
    address: Optional[str] = None
    notes: Optional[str] = None
    initial_weight: Optional[float] = None
    status: str = "active"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class MembershipType(SQLModel, table=True):
    """A billing plan: a price charged once per `duration_days` window."""
    id: Optional[int] = Field(default=None, primary_key=True)
    gym_id: int = Field(foreign_key="gym.id", index=True)
    name: str
    price: float
    duration_days: int
    description: Optional[str] = None
    includes: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    restrictions: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    is_active: bool = True
    is_featured: bool = False
    sort_order: int = 0
    suggested_template_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Membership(SQLModel, table=True):
    """A client's enrollment in a plan between `start_date` and `end_date`."""
    id: Optional[int] = Field(default=None, primary_key=True)
    gym_id: int = Field(foreign_key="gym.id", index=True)
    client_id: int = Field(foreign_key="client.id", index=True)
    membership_type_id: int = Field(foreign_key="membershiptype.id")
    start_date: date
    end_date: date
    status: str = "active"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Payment(SQLModel, table=True):
    """Money received from a client.

    `payment_month` is the `YYYY-MM` tag used to match the payment to a
    billing period; `split_payment` holds `{cash, transfer}` for mixed
    payments.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    gym_id: int = Field(foreign_key="gym.id", index=True)
    client_id: Optional[int] = Field(default=None, foreign_key="client.id", index=True)
    membership_id: Optional[int] = Field(default=None, foreign_key="membership.id", index=True)
    invoice_id: Optional[int] = Field(default=None, foreign_key="invoice.id", index=True)
    cash_closing_id: Optional[int] = Field(default=None, foreign_key="cashclosing.id", index=True)
    recorded_by: Optional[int] = Field(default=None, foreign_key="gymaccount.id")
    amount: float
    method: str = "cash"
    payment_date: date = Field(default_factory=date.today, index=True)
    status: str = "completed"
    notes: Optional[str] = None
    is_partial: bool = False
    payment_month: Optional[str] = None
    split_payment: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Trainer(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    gym_id: int = Field(foreign_key="gym.id", index=True)
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    specialization: Optional[str] = None
    bio: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class GymClass(SQLModel, table=True):
    """A recurring group class. `days_of_week` uses 0 = Sunday."""
    id: Optional[int] = Field(default=None, primary_key=True)
    gym_id: int = Field(foreign_key="gym.id", index=True)
    trainer_id: int = Field(foreign_key="trainer.id")
    name: str
    description: Optional[str] = None
    days_of_week: List[int] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    start_time: str
    duration: int
    capacity: int
    requires_membership: bool = False
    additional_price: float = 0.0
    color: str = "#3b82f6"
    status: str = "active"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ClassEnrollment(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("class_id", "client_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    gym_id: int = Field(foreign_key="gym.id", index=True)
    class_id: int = Field(foreign_key="gymclass.id", index=True)
    client_id: int = Field(foreign_key="client.id", index=True)
    enrolled_at: datetime = Field(default_factory=utcnow)


class Attendance(SQLModel, table=True):
    """Presence of a client at one class session (one row per day)."""
    __table_args__ = (UniqueConstraint("class_id", "client_id", "attendance_date"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    gym_id: int = Field(foreign_key="gym.id", index=True)
    class_id: int = Field(foreign_key="gymclass.id", index=True)
    client_id: int = Field(foreign_key="client.id", index=True)
    attendance_date: date
    present: bool = True
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Product(SQLModel, table=True):
    """A store catalogue item sold through invoices."""
    id: Optional[int] = Field(default=None, primary_key=True)
    gym_id: int = Field(foreign_key="gym.id", index=True)
    name: str
    description: Optional[str] = None
    price: float
    category: Optional[str] = None
    sku: Optional[str] = None
    stock: int = 0
    low_stock_alert: int = 5
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Invoice(SQLModel, table=True):
    """A point-of-sale ticket. `client_id` is empty for walk-in sales."""
    __table_args__ = (UniqueConstraint("gym_id", "invoice_number"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    gym_id: int = Field(foreign_key="gym.id", index=True)
    client_id: Optional[int] = Field(default=None, foreign_key="client.id")
    invoice_number: str = Field(index=True)
    invoice_date: datetime = Field(default_factory=utcnow)
    subtotal: float = 0.0
    tax: float = 0.0
    discount: float = 0.0
    total: float = 0.0
    status: str = "pending"
    notes: Optional[str] = None
    created_by: Optional[int] = Field(default=None, foreign_key="gymaccount.id")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    items: List["InvoiceItem"] = Relationship(back_populates="invoice")


class InvoiceItem(SQLModel, table=True):
    """A line of an `Invoice`; `total` is `quantity * unit_price - discount`."""
    id: Optional[int] = Field(default=None, primary_key=True)
    invoice_id: int = Field(foreign_key="invoice.id", index=True)
    item_type: str
    item_id: Optional[int] = None
    description: str
    quantity: int = 1
    unit_price: float
    subtotal: float
    discount: float = 0.0
    total: float
    created_at: datetime = Field(default_factory=utcnow)
    invoice: Optional[Invoice] = Relationship(back_populates="items")


class AuditLog(SQLModel, table=True):
    """One audited action performed by a staff account."""
    id: Optional[int] = Field(default=None, primary_key=True)
    gym_id: int = Field(foreign_key="gym.id", index=True)
    account_id: Optional[int] = Field(default=None, foreign_key="gymaccount.id", index=True)
    action_type: str = Field(index=True)
    entity_type: str = Field(index=True)
    entity_id: Optional[str] = None
    description: str
    details: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow, index=True)


class CashClosing(SQLModel, table=True):
    """A cash-register shift opened and closed by one account."""
    id: Optional[int] = Field(default=None, primary_key=True)
    gym_id: int = Field(foreign_key="gym.id", index=True)
    account_id: int = Field(foreign_key="gymaccount.id", index=True)
    opening_time: datetime = Field(default_factory=utcnow, index=True)
    closing_time: Optional[datetime] = None
    opening_cash: float = 0.0
    closing_cash: Optional[float] = None
    total_cash_received: float = 0.0
    total_transfer_received: float = 0.0
    total_other_received: float = 0.0
    total_received: float = 0.0
    notes: Optional[str] = None
    status: str = "open"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
