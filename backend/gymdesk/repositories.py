"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (gyms,
accounts, clients, plans, memberships, payments, classes, products,
invoices, audit entries, cash closings). Every repository except the
gym/account lookups used during login is bound to one gym and filters
all reads by it, so a row of another tenant is simply "not found".

Repositories return SQLModel objects. `save` commits by default; pass
`commit=False` to only flush when a service needs several writes in one
transaction.
"""

from datetime import date, datetime
from typing import List, Optional, Sequence

from sqlalchemy import func, or_
from sqlmodel import Session, select

from . import models


class _GymScoped:
    """Common get/list/save/delete for tables with a `gym_id` column."""
    model = None

    def __init__(self, session: Session, gym_id: int):
        self.session = session
        self.gym_id = gym_id

    def _select(self):
        return select(self.model).where(self.model.gym_id == self.gym_id)

    def get(self, obj_id: int):
        """Fetch a row by primary key, or `None` when missing or foreign."""
        obj = self.session.get(self.model, obj_id)
        if obj is None or obj.gym_id != self.gym_id:
            return None
        return obj

    def list(self) -> list:
        return list(self.session.exec(self._select().order_by(self.model.id)).all())

    def save(self, obj, commit: bool = True):
        """Persist `obj` (forcing this repository's gym) and return it."""
        obj.gym_id = self.gym_id
        if hasattr(obj, "updated_at"):
            obj.updated_at = models.utcnow()
        self.session.add(obj)
        if commit:
            self.session.commit()
            self.session.refresh(obj)
        else:
            self.session.flush()
        return obj

    def delete(self, obj, commit: bool = True) -> None:
        self.session.delete(obj)
        if commit:
            self.session.commit()

    def count(self) -> int:
        stmt = select(func.count()).select_from(self.model).where(self.model.gym_id == self.gym_id)
        return self.session.exec(stmt).one()


class GymRepository:
    """Lookups and updates for `Gym` rows (not tenant scoped)."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, gym_id: int) -> Optional[models.Gym]:
        return self.session.get(models.Gym, gym_id)

    def list_active(self) -> List[models.Gym]:
        stmt = select(models.Gym).where(models.Gym.status == "active").order_by(models.Gym.id)
        return list(self.session.exec(stmt).all())

    def save(self, gym: models.Gym, commit: bool = True) -> models.Gym:
        gym.updated_at = models.utcnow()
        self.session.add(gym)
        if commit:
            self.session.commit()
            self.session.refresh(gym)
        else:
            self.session.flush()
        return gym


class AccountRepository(_GymScoped):
    """Staff accounts of a gym."""
    model = models.GymAccount

    def list(self) -> List[models.GymAccount]:
        return list(self.session.exec(self._select().order_by(models.GymAccount.name)).all())

    def count_admins(self) -> int:
        stmt = select(func.count()).select_from(models.GymAccount).where(
            models.GymAccount.gym_id == self.gym_id,
            models.GymAccount.role == "admin",
            models.GymAccount.is_active == True,  # noqa: E712
        )
        return self.session.exec(stmt).one()


class LoginRepository:
    """Account lookups used before a gym is known (login, token checks)."""
    def __init__(self, session: Session):
        self.session = session

    def get_by_email(self, email: str) -> Optional[models.GymAccount]:
        """Return an account by (case-insensitive) email or `None`."""
        stmt = select(models.GymAccount).where(func.lower(models.GymAccount.email) == email.strip().lower())
        return self.session.exec(stmt).first()

    def get(self, account_id: int) -> Optional[models.GymAccount]:
        return self.session.get(models.GymAccount, account_id)


class ClientRepository(_GymScoped):
    model = models.Client

    def search(self, query: Optional[str] = None, status: Optional[str] = None) -> List[models.Client]:
        """Return clients matching a free-text query and/or status, by name."""
        stmt = self._select()
        if status:
            stmt = stmt.where(models.Client.status == status)
        if query and query.strip():
            like = f"%{query.strip().lower()}%"
            stmt = stmt.where(or_(
                func.lower(models.Client.name).like(like),
                func.lower(models.Client.email).like(like),
                models.Client.phone.like(like),
                func.lower(models.Client.document_id).like(like),
            ))
        return list(self.session.exec(stmt.order_by(models.Client.name)).all())

    def count_created_since(self, since: datetime) -> int:
        stmt = select(func.count()).select_from(models.Client).where(
            models.Client.gym_id == self.gym_id,
            models.Client.created_at >= since,
        )
        return self.session.exec(stmt).one()


class MembershipTypeRepository(_GymScoped):
    model = models.MembershipType

    def list(self, active_only: bool = False) -> List[models.MembershipType]:
        stmt = self._select()
        if active_only:
            stmt = stmt.where(models.MembershipType.is_active == True)  # noqa: E712
        stmt = stmt.order_by(models.MembershipType.sort_order, models.MembershipType.id)
        return list(self.session.exec(stmt).all())


class MembershipRepository(_GymScoped):
    model = models.Membership

    def list_for_client(self, client_id: int) -> List[models.Membership]:
        stmt = self._select().where(models.Membership.client_id == client_id).order_by(models.Membership.start_date)
        return list(self.session.exec(stmt).all())

    def list_by_status(self, statuses: Sequence[str]) -> List[models.Membership]:
        stmt = self._select().where(models.Membership.status.in_(list(statuses)))
        return list(self.session.exec(stmt.order_by(models.Membership.id)).all())

    def exists_for_type(self, membership_type_id: int) -> bool:
        stmt = self._select().where(models.Membership.membership_type_id == membership_type_id)
        return self.session.exec(stmt).first() is not None

    def has_current_for_client(self, client_id: int, today: date, statuses: Sequence[str]) -> bool:
        """True when the client holds a membership in `statuses` that ends on/after `today`."""
        stmt = self._select().where(
            models.Membership.client_id == client_id,
            models.Membership.status.in_(list(statuses)),
            models.Membership.end_date >= today,
        )
        return self.session.exec(stmt).first() is not None


class PaymentRepository(_GymScoped):
    model = models.Payment

    def search(
        self,
        client_id: Optional[int] = None,
        membership_id: Optional[int] = None,
        invoice_id: Optional[int] = None,
        status: Optional[str] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[models.Payment]:
        """Return payments matching every provided filter, newest first."""
        stmt = self._select()
        if client_id is not None:
            stmt = stmt.where(models.Payment.client_id == client_id)
        if membership_id is not None:
            stmt = stmt.where(models.Payment.membership_id == membership_id)
        if invoice_id is not None:
            stmt = stmt.where(models.Payment.invoice_id == invoice_id)
        if status:
            stmt = stmt.where(models.Payment.status == status)
        if start is not None:
            stmt = stmt.where(models.Payment.payment_date >= start)
        if end is not None:
            stmt = stmt.where(models.Payment.payment_date <= end)
        stmt = stmt.order_by(models.Payment.payment_date.desc(), models.Payment.id.desc())
        return list(self.session.exec(stmt).all())

    def list_for_closing(self, cash_closing_id: int) -> List[models.Payment]:
        stmt = self._select().where(
            models.Payment.cash_closing_id == cash_closing_id,
            models.Payment.status == "completed",
        )
        return list(self.session.exec(stmt).all())

    def exists_for_client(self, client_id: int) -> bool:
        return self.session.exec(self._select().where(models.Payment.client_id == client_id)).first() is not None


class TrainerRepository(_GymScoped):
    model = models.Trainer


class ClassRepository(_GymScoped):
    model = models.GymClass

    def exists_for_trainer(self, trainer_id: int) -> bool:
        return self.session.exec(self._select().where(models.GymClass.trainer_id == trainer_id)).first() is not None


class EnrollmentRepository(_GymScoped):
    model = models.ClassEnrollment

    def list_for_class(self, class_id: int) -> List[models.ClassEnrollment]:
        stmt = self._select().where(models.ClassEnrollment.class_id == class_id)
        return list(self.session.exec(stmt.order_by(models.ClassEnrollment.enrolled_at)).all())

    def find(self, class_id: int, client_id: int) -> Optional[models.ClassEnrollment]:
        stmt = self._select().where(
            models.ClassEnrollment.class_id == class_id,
            models.ClassEnrollment.client_id == client_id,
        )
        return self.session.exec(stmt).first()

    def delete_for_class(self, class_id: int) -> None:
        for row in self.list_for_class(class_id):
            self.session.delete(row)
        self.session.flush()

    def delete_for_client(self, client_id: int) -> None:
        stmt = self._select().where(models.ClassEnrollment.client_id == client_id)
        for row in self.session.exec(stmt).all():
            self.session.delete(row)
        self.session.flush()


class AttendanceRepository(_GymScoped):
    model = models.Attendance

    def find(self, class_id: int, client_id: int, attendance_date: date) -> Optional[models.Attendance]:
        stmt = self._select().where(
            models.Attendance.class_id == class_id,
            models.Attendance.client_id == client_id,
            models.Attendance.attendance_date == attendance_date,
        )
        return self.session.exec(stmt).first()

    def list_for_class(self, class_id: int, on: Optional[date] = None) -> List[models.Attendance]:
        stmt = self._select().where(models.Attendance.class_id == class_id)
        if on is not None:
            stmt = stmt.where(models.Attendance.attendance_date == on)
        return list(self.session.exec(stmt.order_by(models.Attendance.attendance_date)).all())

    def delete_for_class(self, class_id: int) -> None:
        for row in self.list_for_class(class_id):
            self.session.delete(row)
        self.session.flush()

    def delete_for_client(self, client_id: int) -> None:
        stmt = self._select().where(models.Attendance.client_id == client_id)
        for row in self.session.exec(stmt).all():
            self.session.delete(row)
        self.session.flush()


class ProductRepository(_GymScoped):
    model = models.Product

    def list(self, active_only: bool = False) -> List[models.Product]:
        stmt = self._select()
        if active_only:
            stmt = stmt.where(models.Product.is_active == True)  # noqa: E712
        return list(self.session.exec(stmt.order_by(models.Product.name)).all())


class InvoiceRepository(_GymScoped):
    model = models.Invoice

    def list(self, status: Optional[str] = None, client_id: Optional[int] = None) -> List[models.Invoice]:
        stmt = self._select()
        if status:
            stmt = stmt.where(models.Invoice.status == status)
        if client_id is not None:
            stmt = stmt.where(models.Invoice.client_id == client_id)
        stmt = stmt.order_by(models.Invoice.invoice_date.desc(), models.Invoice.id.desc())
        return list(self.session.exec(stmt).all())

    def items(self, invoice_id: int) -> List[models.InvoiceItem]:
        stmt = select(models.InvoiceItem).where(models.InvoiceItem.invoice_id == invoice_id).order_by(models.InvoiceItem.id)
        return list(self.session.exec(stmt).all())

    def add_item(self, item: models.InvoiceItem) -> models.InvoiceItem:
        self.session.add(item)
        self.session.flush()
        return item

    def last_number_with_prefix(self, prefix: str) -> Optional[str]:
        """Highest invoice number of this gym starting with `prefix`."""
        stmt = select(func.max(models.Invoice.invoice_number)).where(
            models.Invoice.gym_id == self.gym_id,
            models.Invoice.invoice_number.like(f"{prefix}%"),
        )
        return self.session.exec(stmt).one()

    def exists_for_client(self, client_id: int) -> bool:
        return self.session.exec(self._select().where(models.Invoice.client_id == client_id)).first() is not None

    def delete(self, obj, commit: bool = True) -> None:
        for item in self.items(obj.id):
            self.session.delete(item)
        self.session.flush()
        self.session.delete(obj)
        if commit:
            self.session.commit()


class AuditLogRepository(_GymScoped):
    model = models.AuditLog

    def _filtered(self, action_type=None, entity_type=None, account_id=None, start=None, end=None, search=None):
        stmt = self._select()
        if action_type:
            stmt = stmt.where(models.AuditLog.action_type == action_type)
        if entity_type:
            stmt = stmt.where(models.AuditLog.entity_type == entity_type)
        if account_id is not None:
            stmt = stmt.where(models.AuditLog.account_id == account_id)
        if start is not None:
            stmt = stmt.where(models.AuditLog.created_at >= start)
        if end is not None:
            stmt = stmt.where(models.AuditLog.created_at <= end)
        if search and search.strip():
            like = f"%{search.strip().lower()}%"
            stmt = stmt.where(or_(
                func.lower(models.AuditLog.description).like(like),
                func.lower(models.AuditLog.entity_type).like(like),
            ))
        return stmt

    def page(self, page: int, page_size: int, **filters):
        """Return `(rows, total)` for one page of matching entries, newest first."""
        stmt = self._filtered(**filters)
        total = self.session.exec(select(func.count()).select_from(stmt.subquery())).one()
        stmt = stmt.order_by(models.AuditLog.created_at.desc(), models.AuditLog.id.desc())
        rows = self.session.exec(stmt.offset((page - 1) * page_size).limit(page_size)).all()
        return list(rows), total

    def delete_older_than(self, cutoff: datetime, commit: bool = True) -> int:
        stmt = self._select().where(models.AuditLog.created_at < cutoff)
        rows = self.session.exec(stmt).all()
        for row in rows:
            self.session.delete(row)
        if commit:
            self.session.commit()
        return len(rows)


class CashClosingRepository(_GymScoped):
    model = models.CashClosing

    def open_for_account(self, account_id: int) -> Optional[models.CashClosing]:
        stmt = self._select().where(
            models.CashClosing.account_id == account_id,
            models.CashClosing.status == "open",
        )
        return self.session.exec(stmt).first()

    def history(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> List[models.CashClosing]:
        stmt = self._select()
        if start is not None:
            stmt = stmt.where(models.CashClosing.opening_time >= start)
        if end is not None:
            stmt = stmt.where(models.CashClosing.opening_time <= end)
        stmt = stmt.order_by(models.CashClosing.opening_time.desc(), models.CashClosing.id.desc())
        return list(self.session.exec(stmt).all())
