"""Business logic services used by HTTP controllers.

This module holds small service classes that coordinate repositories
and the billing rules. Services are intentionally thin: they validate
input, execute domain logic, persist aggregates via repositories and
write one audit entry per mutating operation.

Every service except `AuthService` is bound to the authenticated
`GymAccount` (the *actor*); the actor's gym scopes all repositories.

Errors: invalid input raises `ValueError`, a missing or foreign row
raises `NotFoundError`, and a request that conflicts with current state
(duplicates, stock, closed registers) raises `ConflictError`.
"""

from datetime import date, datetime, time, timedelta, timezone
import logging
import re
from typing import Dict, List, Optional

import jwt
from passlib.context import CryptContext
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from . import billing, models, repositories
from .config import settings
from .utils.formatting import format_price
from .utils.logos import save_logo

logger = logging.getLogger("gymdesk.services")
audit_logger = logging.getLogger("gymdesk.audit")

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

ROLES = ("admin", "receptionist", "trainer")
CLIENT_STATUSES = ("active", "inactive", "suspended")
MEMBERSHIP_STATUSES = ("active", "upcoming_expiry", "expired", "cancelled")
PAYMENT_METHODS = ("cash", "transfer", "card", "other", "mixed")
PAYMENT_STATUSES = ("completed", "pending", "cancelled", "refunded")
CLASS_STATUSES = ("active", "inactive", "suspended")
PRODUCT_CATEGORIES = ("supplement", "equipment", "apparel", "beverage", "other")
INVOICE_ITEM_TYPES = ("membership", "product", "class", "service", "other")
ACTION_TYPES = ("create", "update", "delete", "login", "logout", "payment", "sale", "cancel")
MONEY_TOLERANCE = 0.005

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
_COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")

SUGGESTED_PLAN_TEMPLATES = [
    {
        "id": "day-pass", "name": "Day pass", "price": 10000, "duration_days": 1,
        "description": "Single-day access to the weights and machines area.",
        "includes": {"free_weights": True, "machines": True, "cardio": True},
        "is_featured": False,
    },
    {
        "id": "weekly", "name": "Weekly", "price": 30000, "duration_days": 7,
        "description": "Seven days of full floor access.",
        "includes": {"free_weights": True, "machines": True, "cardio": True},
        "is_featured": False,
    },
    {
        "id": "monthly-basic", "name": "Monthly basic", "price": 80000, "duration_days": 30,
        "description": "Weights, machines and cardio.",
        "includes": {"free_weights": True, "machines": True, "cardio": True},
        "is_featured": True,
    },
    {
        "id": "monthly-full", "name": "Monthly full", "price": 120000, "duration_days": 30,
        "description": "Everything in basic plus group classes and a locker.",
        "includes": {
            "free_weights": True, "machines": True, "cardio": True, "functional": True,
            "group_classes": True, "group_classes_count": 12, "locker": True,
        },
        "is_featured": True,
    },
    {
        "id": "quarterly", "name": "Quarterly", "price": 210000, "duration_days": 90,
        "description": "Three months of floor access billed once.",
        "includes": {"free_weights": True, "machines": True, "cardio": True},
        "is_featured": False,
    },
    {
        "id": "annual", "name": "Annual", "price": 780000, "duration_days": 365,
        "description": "A full year including group classes.",
        "includes": {
            "free_weights": True, "machines": True, "cardio": True,
            "group_classes": True, "personal_trainer": True, "personal_trainer_sessions": 4,
        },
        "is_featured": False,
    },
]


class NotFoundError(LookupError):
    """Raised when a row does not exist in the actor's gym."""


class ConflictError(Exception):
    """Raised when an operation conflicts with the current state."""


def _require_text(value, field_name: str) -> str:
    if value is None or not str(value).strip():
        raise ValueError(f"{field_name} is required")
    return str(value).strip()


def _require_choice(value, choices, field_name: str) -> str:
    if value not in choices:
        raise ValueError(f"{field_name} must be one of: {', '.join(choices)}")
    return value


def _require_non_negative(value, field_name: str) -> float:
    if value is None or float(value) < 0:
        raise ValueError(f"{field_name} must be >= 0")
    return float(value)


def _day_bounds(start: Optional[date], end: Optional[date]):
    """Convert an inclusive date range to UTC datetimes."""
    start_dt = datetime.combine(start, time.min, tzinfo=timezone.utc) if start else None
    end_dt = datetime.combine(end, time.max, tzinfo=timezone.utc) if end else None
    return start_dt, end_dt


def _apply(obj, data: dict, fields) -> dict:
    """Copy the allowed keys of `data` onto `obj` and return what changed."""
    changed = {}
    for key in fields:
        if key in data and getattr(obj, key) != data[key]:
            changed[key] = data[key]
            setattr(obj, key, data[key])
    return changed


def _reject_nulls(obj, data: dict) -> None:
    """Raise ValueError for explicit nulls sent for NOT NULL columns."""
    columns = type(obj).__table__.columns
    for key, value in data.items():
        if value is None and key in columns and not columns[key].nullable:
            raise ValueError(f"{key} cannot be null")


def account_out(account: models.GymAccount) -> dict:
    """Public representation of an account (no password hash)."""
    return {
        "id": account.id,
        "gym_id": account.gym_id,
        "email": account.email,
        "name": account.name,
        "role": account.role,
        "permissions": account.permissions or {},
        "is_active": account.is_active,
    }


# -- audit --------------------------------------------------------------------

class AuditService:
    """Write and query the gym's audit trail."""
    def __init__(self, session: Session, gym_id: int):
        self.session = session
        self.repo = repositories.AuditLogRepository(session, gym_id)

    def log(self, account_id: Optional[int], action_type: str, entity_type: str, entity_id=None,
            description: str = "", details: Optional[dict] = None, commit: bool = True) -> models.AuditLog:
        """Record one action. `details` must be JSON serialisable."""
        _require_choice(action_type, ACTION_TYPES, "action_type")
        entry = models.AuditLog(
            gym_id=self.repo.gym_id,
            account_id=account_id,
            action_type=action_type,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            description=description,
            details=details or {},
        )
        self.repo.save(entry, commit=commit)
        audit_logger.info("%s %s:%s by account %s", action_type, entity_type, entry.entity_id, account_id)
        return entry

    def query(self, page: int = 1, page_size: int = 50, action_type: Optional[str] = None,
              entity_type: Optional[str] = None, account_id: Optional[int] = None,
              start: Optional[date] = None, end: Optional[date] = None, search: Optional[str] = None) -> dict:
        """Return one page of entries matching the filters, newest first."""
        if page < 1:
            raise ValueError("page must be >= 1")
        if page_size < 1 or page_size > 200:
            raise ValueError("page_size must be between 1 and 200")
        if action_type:
            _require_choice(action_type, ACTION_TYPES, "action_type")
        start_dt, end_dt = _day_bounds(start, end)
        rows, total = self.repo.page(
            page, page_size,
            action_type=action_type, entity_type=entity_type, account_id=account_id,
            start=start_dt, end=end_dt, search=search,
        )
        return {"items": rows, "total": total, "page": page, "page_size": page_size}

    def cleanup(self, retention_days: Optional[int] = None, now: Optional[datetime] = None,
                account_id: Optional[int] = None) -> int:
        """Delete entries older than the retention window; return how many.

        The purge itself is recorded as a `delete` entry on `audit_log`.
        """
        if retention_days is None:
            retention_days = settings.AUDIT_LOG_RETENTION_DAYS
        if retention_days < 1:
            raise ValueError("retention_days must be >= 1")
        cutoff = (now or models.utcnow()) - timedelta(days=retention_days)
        removed = self.repo.delete_older_than(cutoff, commit=False)
        self.log(account_id, "delete", "audit_log", None,
                 f"Purged {removed} audit entries older than {retention_days} days",
                 {"removed": removed, "cutoff": cutoff.isoformat()}, commit=False)
        self.session.commit()
        logger.info("pruned %d audit entries older than %s for gym %s", removed, cutoff.date(), self.repo.gym_id)
        return removed


class _ActorService:
    """Base for services acting on behalf of an authenticated account.

    Maintenance jobs pass `actor=None` and an explicit `gym_id`; their
    audit entries have no account.
    """
    def __init__(self, session: Session, actor: Optional[models.GymAccount], gym_id: Optional[int] = None):
        if actor is None and gym_id is None:
            raise ValueError("an actor or a gym_id is required")
        self.session = session
        self.actor = actor
        self.gym_id = actor.gym_id if actor is not None else gym_id
        self.audit = AuditService(session, self.gym_id)

    def _log(self, action_type, entity_type, entity_id, description, details=None, commit=True):
        account_id = self.actor.id if self.actor is not None else None
        return self.audit.log(account_id, action_type, entity_type, entity_id, description, details, commit)


# -- auth & accounts ----------------------------------------------------------

class AuthService:
    """Gym sign-up and credential checks."""
    def __init__(self, session: Session):
        self.session = session
        self.logins = repositories.LoginRepository(session)

    def register_gym(self, gym_name: str, email: str, name: str, password: str):
        """Create a gym together with its first admin account.

        Returns `(gym, account)`. Raises `ConflictError` if the email is
        already used by any account.
        """
        gym_name = _require_text(gym_name, "gym_name")
        name = _require_text(name, "name")
        email = _require_text(email, "email").lower()
        _validate_password(password)
        if self.logins.get_by_email(email):
            raise ConflictError("email already registered")
        gym = models.Gym(name=gym_name, email=email)
        self.session.add(gym)
        self.session.flush()
        account = models.GymAccount(
            gym_id=gym.id, email=email, name=name, role="admin",
            password_hash=PWD_CTX.hash(password), permissions={"all": True},
        )
        self.session.add(account)
        self.session.flush()
        AuditService(self.session, gym.id).log(
            account.id, "create", "gym", gym.id, f"Gym '{gym.name}' registered", commit=False,
        )
        self.session.commit()
        self.session.refresh(gym)
        self.session.refresh(account)
        logger.info("registered gym %s with admin %s", gym.id, account.id)
        return gym, account

    def authenticate(self, email: str, password: str) -> Optional[str]:
        """Verify credentials and return a signed JWT token on success.

        Returns `None` if authentication fails.
        """
        account = self.logins.get_by_email(email or "")
        if not account or not account.is_active:
            return None
        if not PWD_CTX.verify(password, account.password_hash):
            return None
        gym = self.session.get(models.Gym, account.gym_id)
        if gym is None or gym.status != "active":
            return None
        AuditService(self.session, account.gym_id).log(account.id, "login", "account", account.id, f"{account.name} signed in")
        return issue_token(account)


def issue_token(account: models.GymAccount) -> str:
    expire = datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRE_HOURS)
    payload = {
        "account_id": account.id,
        "gym_id": account.gym_id,
        "role": account.role,
        "email": account.email,
        "exp": int(expire.timestamp()),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def _validate_password(password: str) -> None:
    if not password or len(password) < 6:
        raise ValueError("password must be at least 6 characters")


class AccountService(_ActorService):
    """Staff account management (admin only, enforced by the controller)."""
    def __init__(self, session: Session, actor: models.GymAccount):
        super().__init__(session, actor)
        self.repo = repositories.AccountRepository(session, self.gym_id)
        self.logins = repositories.LoginRepository(session)

    def list(self) -> List[models.GymAccount]:
        return self.repo.list()

    def get(self, account_id: int) -> models.GymAccount:
        account = self.repo.get(account_id)
        if not account:
            raise NotFoundError("account not found")
        return account

    def create(self, data: dict) -> models.GymAccount:
        email = _require_text(data.get("email"), "email").lower()
        name = _require_text(data.get("name"), "name")
        role = _require_choice(data.get("role", "receptionist"), ROLES, "role")
        _validate_password(data.get("password"))
        if self.logins.get_by_email(email):
            raise ConflictError("email already registered")
        account = models.GymAccount(
            gym_id=self.gym_id, email=email, name=name, role=role,
            password_hash=PWD_CTX.hash(data["password"]),
            permissions=data.get("permissions") or {},
        )
        self.repo.save(account)
        self._log("create", "account", account.id, f"Created {role} account {email}")
        return account

    def update(self, account_id: int, data: dict) -> models.GymAccount:
        account = self.get(account_id)
        _reject_nulls(account, data)
        if "role" in data:
            _require_choice(data["role"], ROLES, "role")
        if "name" in data:
            data["name"] = _require_text(data["name"], "name")
        demoting = ("role" in data and data["role"] != "admin") or data.get("is_active") is False
        if account.role == "admin" and demoting and self.repo.count_admins() <= 1:
            raise ConflictError("a gym needs at least one active admin")
        changed = _apply(account, data, ("name", "role", "permissions", "is_active"))
        if data.get("password"):
            _validate_password(data["password"])
            account.password_hash = PWD_CTX.hash(data["password"])
            changed["password"] = "changed"
        self.repo.save(account)
        self._log("update", "account", account.id, f"Updated account {account.email}", {"fields": sorted(changed)})
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        if account.id == self.actor.id:
            raise ConflictError("you cannot delete your own account")
        if account.role == "admin" and self.repo.count_admins() <= 1:
            raise ConflictError("a gym needs at least one active admin")
        # history rows keep pointing at the account, so deactivate instead of dropping it
        account.is_active = False
        self.repo.save(account)
        self._log("delete", "account", account.id, f"Deactivated account {account.email}")


class GymService(_ActorService):
    """Read and update the actor's gym profile."""
    FIELDS = ("name", "email", "phone", "address", "city", "opening_time", "closing_time", "timezone", "payment_methods")

    def __init__(self, session: Session, actor: models.GymAccount):
        super().__init__(session, actor)
        self.repo = repositories.GymRepository(session)

    def get(self) -> models.Gym:
        gym = self.repo.get(self.gym_id)
        if not gym:
            raise NotFoundError("gym not found")
        return gym

    def update(self, data: dict) -> models.Gym:
        gym = self.get()
        _reject_nulls(gym, data)
        if "name" in data:
            data["name"] = _require_text(data["name"], "name")
        for key in ("opening_time", "closing_time"):
            if data.get(key) and not _TIME_RE.match(data[key]):
                raise ValueError(f"{key} must be HH:MM")
        if "payment_methods" in data:
            methods = data["payment_methods"] or []
            for method in methods:
                _require_choice(method, PAYMENT_METHODS, "payment_methods")
            data["payment_methods"] = list(dict.fromkeys(methods))
        changed = _apply(gym, data, self.FIELDS)
        self.repo.save(gym)
        self._log("update", "gym", gym.id, "Updated gym settings", {"fields": sorted(changed)})
        return gym

    def set_logo(self, payload: bytes) -> models.Gym:
        if len(payload) > settings.MAX_UPLOAD_BYTES:
            raise ValueError("file too large")
        gym = self.get()
        path = save_logo(gym.id, payload)
        gym.logo_path = str(path)
        self.repo.save(gym)
        self._log("update", "gym", gym.id, "Uploaded gym logo", {"file": path.name})
        return gym


# -- clients ------------------------------------------------------------------

class ClientService(_ActorService):
    FIELDS = ("name", "email", "phone", "document_id", "birth_date", "address", "notes", "initial_weight", "status")

    def __init__(self, session: Session, actor: models.GymAccount):
        super().__init__(session, actor)
        self.repo = repositories.ClientRepository(session, self.gym_id)

    def list(self, query: Optional[str] = None, status: Optional[str] = None) -> List[models.Client]:
        if status:
            _require_choice(status, CLIENT_STATUSES, "status")
        return self.repo.search(query, status)

    def get(self, client_id: int) -> models.Client:
        client = self.repo.get(client_id)
        if not client:
            raise NotFoundError("client not found")
        return client

    def _validate(self, data: dict) -> None:
        if "name" in data:
            data["name"] = _require_text(data["name"], "name")
        if "status" in data:
            _require_choice(data["status"], CLIENT_STATUSES, "status")
        if data.get("initial_weight") is not None and data["initial_weight"] <= 0:
            raise ValueError("initial_weight must be > 0")
        if data.get("birth_date") and data["birth_date"] > date.today():
            raise ValueError("birth_date cannot be in the future")

    def create(self, data: dict) -> models.Client:
        data.setdefault("status", "active")
        if "name" not in data:
            raise ValueError("name is required")
        self._validate(data)
        client = models.Client(gym_id=self.gym_id, **{k: data.get(k) for k in self.FIELDS if k in data})
        self.repo.save(client)
        self._log("create", "client", client.id, f"Created client {client.name}")
        return client

    def update(self, client_id: int, data: dict) -> models.Client:
        client = self.get(client_id)
        _reject_nulls(client, data)
        self._validate(data)
        changed = _apply(client, data, self.FIELDS)
        self.repo.save(client)
        self._log("update", "client", client.id, f"Updated client {client.name}", {"fields": sorted(changed)})
        return client

    def delete(self, client_id: int) -> None:
        """Delete a client without billing history.

        Clients with memberships, payments or invoices must be set to
        `inactive` instead so their history survives.
        """
        client = self.get(client_id)
        if (repositories.MembershipRepository(self.session, self.gym_id).list_for_client(client.id)
                or repositories.PaymentRepository(self.session, self.gym_id).exists_for_client(client.id)
                or repositories.InvoiceRepository(self.session, self.gym_id).exists_for_client(client.id)):
            raise ConflictError("client has billing history; mark it inactive instead")
        repositories.EnrollmentRepository(self.session, self.gym_id).delete_for_client(client.id)
        repositories.AttendanceRepository(self.session, self.gym_id).delete_for_client(client.id)
        self.repo.delete(client, commit=False)
        self._log("delete", "client", client_id, f"Deleted client {client.name}", commit=False)
        self.session.commit()

    def detail(self, client_id: int, today: Optional[date] = None) -> dict:
        """Client with each membership and its reconciled payment status."""
        client = self.get(client_id)
        memberships = MembershipService(self.session, self.actor)
        payments = repositories.PaymentRepository(self.session, self.gym_id).search(client_id=client.id)
        plans = {p.id: p for p in repositories.MembershipTypeRepository(self.session, self.gym_id).list()}
        rows = []
        for membership in memberships.repo.list_for_client(client.id):
            plan = plans.get(membership.membership_type_id)
            rows.append({
                "membership": membership,
                "plan": plan,
                "payment_status": billing.calculate_payment_status(client, membership, plan, payments, today),
            })
        return {"client": client, "memberships": rows, "payments": payments}


# -- plans --------------------------------------------------------------------

class MembershipTypeService(_ActorService):
    FIELDS = ("name", "price", "duration_days", "description", "includes", "restrictions",
              "is_active", "is_featured", "sort_order")

    def __init__(self, session: Session, actor: models.GymAccount):
        super().__init__(session, actor)
        self.repo = repositories.MembershipTypeRepository(session, self.gym_id)

    def list(self, active_only: bool = False) -> List[models.MembershipType]:
        return self.repo.list(active_only=active_only)

    def get(self, type_id: int) -> models.MembershipType:
        plan = self.repo.get(type_id)
        if not plan:
            raise NotFoundError("membership type not found")
        return plan

    def _validate(self, data: dict) -> None:
        if "name" in data:
            data["name"] = _require_text(data["name"], "name")
        if "price" in data:
            _require_non_negative(data["price"], "price")
        if "duration_days" in data and (data["duration_days"] is None or int(data["duration_days"]) < 1):
            raise ValueError("duration_days must be >= 1")

    def create(self, data: dict, template_id: Optional[str] = None) -> models.MembershipType:
        for key in ("name", "price", "duration_days"):
            if key not in data:
                raise ValueError(f"{key} is required")
        self._validate(data)
        plan = models.MembershipType(
            gym_id=self.gym_id,
            suggested_template_id=template_id,
            **{k: data[k] for k in self.FIELDS if k in data and data[k] is not None},
        )
        self.repo.save(plan)
        self._log("create", "membership_type", plan.id, f"Created plan {plan.name}", {"template": template_id} if template_id else None)
        return plan

    def update(self, type_id: int, data: dict) -> models.MembershipType:
        plan = self.get(type_id)
        _reject_nulls(plan, data)
        self._validate(data)
        changed = _apply(plan, data, self.FIELDS)
        self.repo.save(plan)
        self._log("update", "membership_type", plan.id, f"Updated plan {plan.name}", {"fields": sorted(changed)})
        return plan

    def delete(self, type_id: int) -> None:
        plan = self.get(type_id)
        if repositories.MembershipRepository(self.session, self.gym_id).exists_for_type(plan.id):
            raise ConflictError("plan has memberships; deactivate it instead")
        self.repo.delete(plan, commit=False)
        self._log("delete", "membership_type", type_id, f"Deleted plan {plan.name}", commit=False)
        self.session.commit()

    @staticmethod
    def templates() -> List[dict]:
        return [dict(t) for t in SUGGESTED_PLAN_TEMPLATES]

    def create_from_template(self, template_id: str) -> models.MembershipType:
        """Copy a suggested template into a plan owned by this gym."""
        template = next((t for t in SUGGESTED_PLAN_TEMPLATES if t["id"] == template_id), None)
        if template is None:
            raise NotFoundError("template not found")
        data = {
            "name": template["name"],
            "price": template["price"],
            "duration_days": template["duration_days"],
            "description": template["description"],
            "includes": dict(template["includes"]),
            "restrictions": {},
            "is_active": True,
            "is_featured": template["is_featured"],
            "sort_order": self.repo.count(),
        }
        return self.create(data, template_id=template_id)


# -- memberships --------------------------------------------------------------

class MembershipService(_ActorService):
    def __init__(self, session: Session, actor: Optional[models.GymAccount], gym_id: Optional[int] = None):
        super().__init__(session, actor, gym_id)
        self.repo = repositories.MembershipRepository(session, self.gym_id)
        self.plans = repositories.MembershipTypeRepository(session, self.gym_id)
        self.clients = repositories.ClientRepository(session, self.gym_id)

    def list(self, client_id: Optional[int] = None) -> List[models.Membership]:
        if client_id is not None:
            return self.repo.list_for_client(client_id)
        return self.repo.list()

    def get(self, membership_id: int) -> models.Membership:
        membership = self.repo.get(membership_id)
        if not membership:
            raise NotFoundError("membership not found")
        return membership

    def _plan(self, type_id: int) -> models.MembershipType:
        plan = self.plans.get(type_id)
        if not plan:
            raise NotFoundError("membership type not found")
        return plan

    def create(self, data: dict, today: Optional[date] = None) -> models.Membership:
        """Enroll a client in a plan.

        When `end_date` is omitted it is derived from the plan duration
        and the number of `periods` purchased (default one).
        """
        today = today or date.today()
        client = self.clients.get(data.get("client_id"))
        if not client:
            raise NotFoundError("client not found")
        plan = self._plan(data.get("membership_type_id"))
        start = data.get("start_date") or today
        end = data.get("end_date") or billing.membership_end_date(start, plan.duration_days, data.get("periods") or 1)
        if end <= start:
            raise ValueError("end_date must be after start_date")
        membership = models.Membership(
            gym_id=self.gym_id, client_id=client.id, membership_type_id=plan.id,
            start_date=start, end_date=end,
        )
        membership.status = billing.membership_state(membership, today, settings.EXPIRY_WARNING_DAYS)
        self.repo.save(membership)
        self._log("create", "membership", membership.id, f"{client.name} joined {plan.name}",
                  {"start_date": start.isoformat(), "end_date": end.isoformat()})
        return membership

    def update(self, membership_id: int, data: dict, today: Optional[date] = None) -> models.Membership:
        membership = self.get(membership_id)
        _reject_nulls(membership, data)
        if "membership_type_id" in data:
            self._plan(data["membership_type_id"])
        if "status" in data:
            _require_choice(data["status"], MEMBERSHIP_STATUSES, "status")
        changed = _apply(membership, data, ("membership_type_id", "start_date", "end_date", "status"))
        if membership.end_date <= membership.start_date:
            raise ValueError("end_date must be after start_date")
        if "status" not in data:
            membership.status = billing.membership_state(membership, today, settings.EXPIRY_WARNING_DAYS)
        self.repo.save(membership)
        self._log("update", "membership", membership.id, "Updated membership", {"fields": sorted(changed)})
        return membership

    def cancel(self, membership_id: int) -> models.Membership:
        membership = self.get(membership_id)
        if membership.status == "cancelled":
            raise ConflictError("membership already cancelled")
        membership.status = "cancelled"
        self.repo.save(membership)
        self._log("cancel", "membership", membership.id, "Cancelled membership")
        return membership

    def payment_status(self, membership_id: int, today: Optional[date] = None) -> billing.PaymentStatus:
        membership = self.get(membership_id)
        client = self.clients.get(membership.client_id)
        plan = self.plans.get(membership.membership_type_id)
        payments = repositories.PaymentRepository(self.session, self.gym_id).search(membership_id=membership.id)
        return billing.calculate_payment_status(client, membership, plan, payments, today)

    def refresh_statuses(self, today: Optional[date] = None, warning_days: Optional[int] = None) -> int:
        """Recompute lifecycle states of all non-cancelled memberships.

        Returns the number of memberships whose state changed.
        """
        today = today or date.today()
        warning_days = settings.EXPIRY_WARNING_DAYS if warning_days is None else warning_days
        changed = 0
        for membership in self.repo.list_by_status(("active", "upcoming_expiry", "expired")):
            state = billing.membership_state(membership, today, warning_days)
            if state != membership.status:
                membership.status = state
                self.repo.save(membership, commit=False)
                changed += 1
        if changed:
            self._log("update", "membership", None, f"Refreshed {changed} membership status(es)", commit=False)
        self.session.commit()
        logger.info("gym %s: %d membership status change(s) for %s", self.gym_id, changed, today)
        return changed


# -- payments -----------------------------------------------------------------

def _validated_split(split, amount: float) -> Optional[dict]:
    if not split:
        return None
    cash = _require_non_negative(split.get("cash", 0), "split_payment.cash")
    transfer = _require_non_negative(split.get("transfer", 0), "split_payment.transfer")
    if abs((cash + transfer) - amount) > MONEY_TOLERANCE:
        raise ValueError("split_payment cash + transfer must equal amount")
    return {"cash": cash, "transfer": transfer}


def _sync_invoice_status(session: Session, gym_id: int, invoice_id: int) -> Optional[models.Invoice]:
    """Move an invoice between pending/partially_paid/paid from its payments."""
    invoices = repositories.InvoiceRepository(session, gym_id)
    invoice = invoices.get(invoice_id)
    if invoice is None or invoice.status == "cancelled":
        return invoice
    paid = sum(billing.collected_amount(p) for p in repositories.PaymentRepository(session, gym_id).search(
        invoice_id=invoice.id, status="completed"))
    if paid <= 0:
        invoice.status = "pending"
    elif paid + MONEY_TOLERANCE >= invoice.total:
        invoice.status = "paid"
    else:
        invoice.status = "partially_paid"
    invoices.save(invoice, commit=False)
    return invoice


class PaymentService(_ActorService):
    def __init__(self, session: Session, actor: models.GymAccount):
        super().__init__(session, actor)
        self.repo = repositories.PaymentRepository(session, self.gym_id)
        self.closings = repositories.CashClosingRepository(session, self.gym_id)

    def list(self, **filters) -> List[models.Payment]:
        if filters.get("status"):
            _require_choice(filters["status"], PAYMENT_STATUSES, "status")
        return self.repo.search(**filters)

    def get(self, payment_id: int) -> models.Payment:
        payment = self.repo.get(payment_id)
        if not payment:
            raise NotFoundError("payment not found")
        return payment

    def _validate_refs(self, data: dict) -> None:
        client_id = data.get("client_id")
        if client_id is not None and not repositories.ClientRepository(self.session, self.gym_id).get(client_id):
            raise NotFoundError("client not found")
        if data.get("membership_id") is not None:
            membership = repositories.MembershipRepository(self.session, self.gym_id).get(data["membership_id"])
            if not membership:
                raise NotFoundError("membership not found")
            if membership.client_id != client_id:
                raise ValueError("membership does not belong to client")
        if data.get("invoice_id") is not None:
            invoice = repositories.InvoiceRepository(self.session, self.gym_id).get(data["invoice_id"])
            if not invoice:
                raise NotFoundError("invoice not found")
            if invoice.status == "cancelled":
                raise ConflictError("invoice is cancelled")
        if client_id is None and data.get("invoice_id") is None:
            raise ValueError("client_id is required for payments not linked to an invoice")

    def _normalize(self, data: dict, today: date) -> dict:
        amount = data.get("amount")
        if amount is None or float(amount) <= 0:
            raise ValueError("amount must be > 0")
        data["amount"] = round(float(amount), 2)
        data["split_payment"] = _validated_split(data.get("split_payment"), data["amount"])
        if data["split_payment"]:
            data["method"] = "mixed"
        _require_choice(data.get("method") or "cash", PAYMENT_METHODS, "method")
        data["method"] = data.get("method") or "cash"
        if data["method"] == "mixed" and not data["split_payment"]:
            raise ValueError("mixed payments need split_payment")
        data["payment_date"] = data.get("payment_date") or today
        if data.get("payment_month"):
            billing.parse_month(data["payment_month"])
        else:
            data["payment_month"] = billing.month_key(data["payment_date"])
        data["status"] = _require_choice(data.get("status") or "completed", PAYMENT_STATUSES, "status")
        return data

    def record(self, data: dict, today: Optional[date] = None, commit: bool = True) -> models.Payment:
        """Register a payment.

        Completed payments are attached to the actor's open cash closing
        so they show up when the register is closed.
        """
        today = today or date.today()
        self._validate_refs(data)
        data = self._normalize(data, today)
        payment = models.Payment(
            gym_id=self.gym_id,
            client_id=data.get("client_id"),
            membership_id=data.get("membership_id"),
            invoice_id=data.get("invoice_id"),
            recorded_by=self.actor.id,
            amount=data["amount"],
            method=data["method"],
            payment_date=data["payment_date"],
            status=data["status"],
            notes=data.get("notes"),
            is_partial=bool(data.get("is_partial")),
            payment_month=data["payment_month"],
            split_payment=data["split_payment"],
        )
        if payment.status == "completed":
            closing = self.closings.open_for_account(self.actor.id)
            payment.cash_closing_id = closing.id if closing else None
        self.repo.save(payment, commit=False)
        if payment.invoice_id is not None:
            _sync_invoice_status(self.session, self.gym_id, payment.invoice_id)
        self._log("payment", "payment", payment.id,
                  f"Payment of {format_price(payment.amount)} ({payment.method}) for {payment.payment_month}",
                  {"amount": payment.amount, "client_id": payment.client_id, "membership_id": payment.membership_id},
                  commit=False)
        if commit:
            self.session.commit()
            self.session.refresh(payment)
        return payment

    def _ensure_mutable(self, payment: models.Payment) -> None:
        if payment.cash_closing_id is not None:
            closing = self.closings.get(payment.cash_closing_id)
            if closing and closing.status == "closed":
                raise ConflictError("payment belongs to a closed cash closing")

    def update(self, payment_id: int, data: dict, today: Optional[date] = None) -> models.Payment:
        payment = self.get(payment_id)
        _reject_nulls(payment, data)
        self._ensure_mutable(payment)
        merged = {
            "amount": payment.amount, "method": payment.method, "payment_date": payment.payment_date,
            "payment_month": payment.payment_month, "status": payment.status,
            "split_payment": payment.split_payment,
        }
        if "amount" in data and "split_payment" not in data:
            merged["split_payment"] = None
            if payment.method == "mixed" and "method" not in data:
                raise ValueError("changing the amount of a mixed payment needs split_payment")
        merged.update({k: v for k, v in data.items() if k in merged})
        normalized = self._normalize(merged, today or date.today())
        changed = _apply(payment, {**normalized, **{k: data[k] for k in ("notes", "is_partial") if k in data}},
                         ("amount", "method", "payment_date", "payment_month", "status", "split_payment", "notes", "is_partial"))
        if payment.status != "completed":
            payment.cash_closing_id = None
        elif payment.cash_closing_id is None:
            closing = self.closings.open_for_account(payment.recorded_by or self.actor.id)
            payment.cash_closing_id = closing.id if closing else None
        self.repo.save(payment, commit=False)
        if payment.invoice_id is not None:
            _sync_invoice_status(self.session, self.gym_id, payment.invoice_id)
        self._log("update", "payment", payment.id, "Updated payment", {"fields": sorted(changed)}, commit=False)
        self.session.commit()
        self.session.refresh(payment)
        return payment

    def cancel(self, payment_id: int) -> models.Payment:
        payment = self.get(payment_id)
        if payment.status == "cancelled":
            raise ConflictError("payment already cancelled")
        self._ensure_mutable(payment)
        payment.status = "cancelled"
        payment.cash_closing_id = None
        self.repo.save(payment, commit=False)
        if payment.invoice_id is not None:
            _sync_invoice_status(self.session, self.gym_id, payment.invoice_id)
        self._log("cancel", "payment", payment.id, f"Cancelled payment of {format_price(payment.amount)}", commit=False)
        self.session.commit()
        self.session.refresh(payment)
        return payment

    def debtors(self, today: Optional[date] = None) -> List[dict]:
        """Memberships of active clients with unpaid periods, worst first."""
        today = today or date.today()
        clients = {c.id: c for c in repositories.ClientRepository(self.session, self.gym_id).search(status="active")}
        plans = {p.id: p for p in repositories.MembershipTypeRepository(self.session, self.gym_id).list()}
        payments = self.repo.search(status="completed")
        out = []
        for membership in repositories.MembershipRepository(self.session, self.gym_id).list():
            client = clients.get(membership.client_id)
            plan = plans.get(membership.membership_type_id)
            if client is None or plan is None or membership.status == "cancelled":
                continue
            status = billing.calculate_payment_status(client, membership, plan, payments, today)
            if status.periods_owed == 0:
                continue
            out.append({
                "client_id": client.id,
                "client_name": client.name,
                "membership_id": membership.id,
                "plan_name": plan.name,
                "periods_owed": status.periods_owed,
                "total_owed": status.total_owed,
                "owed_months": status.owed_months,
                "period_label": status.period_label,
                "next_payment_date": status.next_payment_date,
            })
        out.sort(key=lambda r: (-r["periods_owed"], -r["total_owed"], r["client_name"]))
        return out


# -- trainers & classes -------------------------------------------------------

class TrainerService(_ActorService):
    FIELDS = ("name", "email", "phone", "specialization", "bio", "is_active")

    def __init__(self, session: Session, actor: models.GymAccount):
        super().__init__(session, actor)
        self.repo = repositories.TrainerRepository(session, self.gym_id)

    def list(self) -> List[models.Trainer]:
        return self.repo.list()

    def get(self, trainer_id: int) -> models.Trainer:
        trainer = self.repo.get(trainer_id)
        if not trainer:
            raise NotFoundError("trainer not found")
        return trainer

    def create(self, data: dict) -> models.Trainer:
        name = _require_text(data.get("name"), "name")
        trainer = models.Trainer(gym_id=self.gym_id, **{**{k: data[k] for k in self.FIELDS if k in data}, "name": name})
        self.repo.save(trainer)
        self._log("create", "trainer", trainer.id, f"Created trainer {trainer.name}")
        return trainer

    def update(self, trainer_id: int, data: dict) -> models.Trainer:
        trainer = self.get(trainer_id)
        _reject_nulls(trainer, data)
        if "name" in data:
            data["name"] = _require_text(data["name"], "name")
        changed = _apply(trainer, data, self.FIELDS)
        self.repo.save(trainer)
        self._log("update", "trainer", trainer.id, f"Updated trainer {trainer.name}", {"fields": sorted(changed)})
        return trainer

    def delete(self, trainer_id: int) -> None:
        trainer = self.get(trainer_id)
        if repositories.ClassRepository(self.session, self.gym_id).exists_for_trainer(trainer.id):
            raise ConflictError("trainer is assigned to classes")
        self.repo.delete(trainer, commit=False)
        self._log("delete", "trainer", trainer_id, f"Deleted trainer {trainer.name}", commit=False)
        self.session.commit()


class ClassService(_ActorService):
    FIELDS = ("name", "trainer_id", "description", "days_of_week", "start_time", "duration", "capacity",
              "requires_membership", "additional_price", "color", "status")

    def __init__(self, session: Session, actor: models.GymAccount):
        super().__init__(session, actor)
        self.repo = repositories.ClassRepository(session, self.gym_id)
        self.enrollments = repositories.EnrollmentRepository(session, self.gym_id)
        self.attendances = repositories.AttendanceRepository(session, self.gym_id)
        self.clients = repositories.ClientRepository(session, self.gym_id)

    def list(self) -> List[models.GymClass]:
        return self.repo.list()

    def get(self, class_id: int) -> models.GymClass:
        gym_class = self.repo.get(class_id)
        if not gym_class:
            raise NotFoundError("class not found")
        return gym_class

    def _validate(self, data: dict) -> None:
        if "name" in data:
            data["name"] = _require_text(data["name"], "name")
        if "trainer_id" in data and not repositories.TrainerRepository(self.session, self.gym_id).get(data["trainer_id"]):
            raise NotFoundError("trainer not found")
        if "days_of_week" in data:
            days = data["days_of_week"] or []
            if any(not isinstance(d, int) or d < 0 or d > 6 for d in days):
                raise ValueError("days_of_week values must be between 0 (Sunday) and 6")
            data["days_of_week"] = sorted(set(days))
        if "start_time" in data and not _TIME_RE.match(data["start_time"] or ""):
            raise ValueError("start_time must be HH:MM")
        if "duration" in data and (data["duration"] is None or data["duration"] <= 0):
            raise ValueError("duration must be > 0")
        if "capacity" in data and (data["capacity"] is None or data["capacity"] <= 0):
            raise ValueError("capacity must be > 0")
        if "additional_price" in data:
            _require_non_negative(data["additional_price"], "additional_price")
        if "color" in data and not _COLOR_RE.match(data["color"] or ""):
            raise ValueError("color must be a #RRGGBB hex value")
        if "status" in data:
            _require_choice(data["status"], CLASS_STATUSES, "status")

    def create(self, data: dict) -> models.GymClass:
        for key in ("name", "trainer_id", "start_time", "duration", "capacity"):
            if key not in data:
                raise ValueError(f"{key} is required")
        self._validate(data)
        gym_class = models.GymClass(gym_id=self.gym_id, **{k: data[k] for k in self.FIELDS if k in data and data[k] is not None})
        self.repo.save(gym_class)
        self._log("create", "class", gym_class.id, f"Created class {gym_class.name}")
        return gym_class

    def update(self, class_id: int, data: dict) -> models.GymClass:
        gym_class = self.get(class_id)
        _reject_nulls(gym_class, data)
        self._validate(data)
        if "capacity" in data and data["capacity"] < len(self.enrollments.list_for_class(gym_class.id)):
            raise ConflictError("capacity is below the current number of enrollments")
        changed = _apply(gym_class, data, self.FIELDS)
        self.repo.save(gym_class)
        self._log("update", "class", gym_class.id, f"Updated class {gym_class.name}", {"fields": sorted(changed)})
        return gym_class

    def delete(self, class_id: int) -> None:
        gym_class = self.get(class_id)
        self.enrollments.delete_for_class(gym_class.id)
        self.attendances.delete_for_class(gym_class.id)
        self.repo.delete(gym_class, commit=False)
        self._log("delete", "class", class_id, f"Deleted class {gym_class.name}", commit=False)
        self.session.commit()

    def enroll(self, class_id: int, client_id: int, today: Optional[date] = None) -> models.ClassEnrollment:
        """Enroll a client, enforcing status, membership and capacity rules."""
        today = today or date.today()
        gym_class = self.get(class_id)
        if gym_class.status != "active":
            raise ConflictError("class is not active")
        client = self.clients.get(client_id)
        if not client:
            raise NotFoundError("client not found")
        if client.status in billing.INACTIVE_CLIENT_STATUSES:
            raise ConflictError("client is inactive or suspended")
        if gym_class.requires_membership and not repositories.MembershipRepository(self.session, self.gym_id).has_current_for_client(
                client.id, today, tuple(billing.ACTIVE_MEMBERSHIP_STATES)):
            raise ConflictError("class requires an active membership")
        if len(self.enrollments.list_for_class(gym_class.id)) >= gym_class.capacity:
            raise ConflictError(f"class is full (capacity {gym_class.capacity})")
        if self.enrollments.find(gym_class.id, client.id):
            raise ConflictError("client already enrolled")
        enrollment = models.ClassEnrollment(gym_id=self.gym_id, class_id=gym_class.id, client_id=client.id)
        try:
            self.enrollments.save(enrollment, commit=False)
        except IntegrityError:
            self.session.rollback()
            raise ConflictError("client already enrolled")
        self._log("create", "enrollment", enrollment.id, f"{client.name} enrolled in {gym_class.name}", commit=False)
        self.session.commit()
        self.session.refresh(enrollment)
        return enrollment

    def unenroll(self, class_id: int, client_id: int) -> None:
        gym_class = self.get(class_id)
        enrollment = self.enrollments.find(gym_class.id, client_id)
        if not enrollment:
            raise NotFoundError("enrollment not found")
        self.enrollments.delete(enrollment, commit=False)
        self._log("delete", "enrollment", enrollment.id, f"Client {client_id} left {gym_class.name}", commit=False)
        self.session.commit()

    def list_enrollments(self, class_id: int) -> List[models.ClassEnrollment]:
        return self.enrollments.list_for_class(self.get(class_id).id)

    def record_attendance(self, class_id: int, client_id: int, attendance_date: date, present: bool = True,
                          notes: Optional[str] = None) -> models.Attendance:
        """Insert or update the attendance of a client for one day."""
        gym_class = self.get(class_id)
        if not self.clients.get(client_id):
            raise NotFoundError("client not found")
        record = self.attendances.find(gym_class.id, client_id, attendance_date)
        action = "update" if record else "create"
        if record is None:
            record = models.Attendance(gym_id=self.gym_id, class_id=gym_class.id, client_id=client_id,
                                       attendance_date=attendance_date)
        record.present = present
        if notes is not None:
            record.notes = notes
        self.attendances.save(record, commit=False)
        self._log(action, "attendance", record.id,
                  f"Client {client_id} marked {'present' if present else 'absent'} in {gym_class.name} on {attendance_date}",
                  commit=False)
        self.session.commit()
        self.session.refresh(record)
        return record

    def list_attendance(self, class_id: int, on: Optional[date] = None) -> List[models.Attendance]:
        return self.attendances.list_for_class(self.get(class_id).id, on)


# -- products & invoices ------------------------------------------------------

class ProductService(_ActorService):
    FIELDS = ("name", "description", "price", "category", "sku", "stock", "low_stock_alert", "is_active")

    def __init__(self, session: Session, actor: models.GymAccount):
        super().__init__(session, actor)
        self.repo = repositories.ProductRepository(session, self.gym_id)

    def list(self, active_only: bool = False) -> List[models.Product]:
        return self.repo.list(active_only=active_only)

    def get(self, product_id: int) -> models.Product:
        product = self.repo.get(product_id)
        if not product:
            raise NotFoundError("product not found")
        return product

    def _validate(self, data: dict) -> None:
        if "name" in data:
            data["name"] = _require_text(data["name"], "name")
        if "price" in data:
            _require_non_negative(data["price"], "price")
        for key in ("stock", "low_stock_alert"):
            if key in data and (data[key] is None or int(data[key]) < 0):
                raise ValueError(f"{key} must be >= 0")
        if data.get("category") is not None:
            _require_choice(data["category"], PRODUCT_CATEGORIES, "category")

    def create(self, data: dict) -> models.Product:
        for key in ("name", "price"):
            if key not in data:
                raise ValueError(f"{key} is required")
        self._validate(data)
        product = models.Product(gym_id=self.gym_id, **{k: data[k] for k in self.FIELDS if k in data and data[k] is not None})
        self.repo.save(product)
        self._log("create", "product", product.id, f"Created product {product.name}")
        return product

    def update(self, product_id: int, data: dict) -> models.Product:
        product = self.get(product_id)
        _reject_nulls(product, data)
        self._validate(data)
        changed = _apply(product, data, self.FIELDS)
        self.repo.save(product)
        self._log("update", "product", product.id, f"Updated product {product.name}", {"fields": sorted(changed)})
        return product

    def delete(self, product_id: int) -> None:
        product = self.get(product_id)
        self.repo.delete(product, commit=False)
        self._log("delete", "product", product_id, f"Deleted product {product.name}", commit=False)
        self.session.commit()

    def inventory_summary(self) -> dict:
        active = self.repo.list(active_only=True)
        return {
            "products": len(active),
            "low_stock": sum(1 for p in active if 0 < p.stock <= p.low_stock_alert),
            "out_of_stock": sum(1 for p in active if p.stock == 0),
            "stock_value": round(sum(p.price * p.stock for p in self.repo.list()), 2),
        }


class InvoiceService(_ActorService):
    def __init__(self, session: Session, actor: models.GymAccount):
        super().__init__(session, actor)
        self.repo = repositories.InvoiceRepository(session, self.gym_id)
        self.products = repositories.ProductRepository(session, self.gym_id)

    def list(self, status: Optional[str] = None, client_id: Optional[int] = None) -> List[models.Invoice]:
        return self.repo.list(status=status, client_id=client_id)

    def get(self, invoice_id: int) -> models.Invoice:
        invoice = self.repo.get(invoice_id)
        if not invoice:
            raise NotFoundError("invoice not found")
        return invoice

    def detail(self, invoice_id: int) -> dict:
        invoice = self.get(invoice_id)
        return {
            **invoice.model_dump(),
            "items": [i.model_dump() for i in self.repo.items(invoice.id)],
            "payments": [p.model_dump() for p in repositories.PaymentRepository(self.session, self.gym_id).search(invoice_id=invoice.id)],
        }

    def next_number(self, when: datetime) -> str:
        """Next `INV-YYYY-NNNNNN` number for this gym and year."""
        prefix = f"INV-{when.year}-"
        last = self.repo.last_number_with_prefix(prefix)
        seq = int(last.rsplit("-", 1)[1]) + 1 if last else 1
        return f"{prefix}{seq:06d}"

    def _build_item(self, raw: dict, reserved: Dict[int, int]) -> models.InvoiceItem:
        item_type = _require_choice(raw.get("item_type"), INVOICE_ITEM_TYPES, "item_type")
        quantity = int(raw.get("quantity") or 1)
        if quantity < 1:
            raise ValueError("quantity must be >= 1")
        description = (raw.get("description") or "").strip()
        unit_price = raw.get("unit_price")
        if item_type == "product":
            product = self.products.get(raw.get("item_id"))
            if not product or not product.is_active:
                raise NotFoundError("product not found")
            reserved[product.id] = reserved.get(product.id, 0) + quantity
            if product.stock < reserved[product.id]:
                raise ConflictError(f"insufficient stock for {product.name} (available {product.stock})")
            description = description or product.name
            unit_price = product.price if unit_price is None else unit_price
        elif item_type == "membership" and raw.get("item_id") is not None:
            plan = repositories.MembershipTypeRepository(self.session, self.gym_id).get(raw["item_id"])
            if not plan:
                raise NotFoundError("membership type not found")
            description = description or plan.name
            unit_price = plan.price if unit_price is None else unit_price
        elif item_type == "class" and raw.get("item_id") is not None:
            gym_class = repositories.ClassRepository(self.session, self.gym_id).get(raw["item_id"])
            if not gym_class:
                raise NotFoundError("class not found")
            description = description or gym_class.name
            unit_price = gym_class.additional_price if unit_price is None else unit_price
        if not description:
            raise ValueError("description is required")
        unit_price = _require_non_negative(unit_price, "unit_price")
        discount = _require_non_negative(raw.get("discount") or 0, "discount")
        subtotal = round(quantity * unit_price, 2)
        return models.InvoiceItem(
            invoice_id=0, item_type=item_type, item_id=raw.get("item_id"), description=description,
            quantity=quantity, unit_price=unit_price, subtotal=subtotal, discount=discount,
            total=max(0.0, round(subtotal - discount, 2)),
        )

    def create(self, data: dict) -> models.Invoice:
        """Create an invoice with its items and take product stock.

        Everything happens in one transaction: if any item is invalid or
        a product lacks stock, nothing is written.
        """
        raw_items = data.get("items") or []
        if not raw_items:
            raise ValueError("an invoice needs at least one item")
        if data.get("client_id") is not None and not repositories.ClientRepository(self.session, self.gym_id).get(data["client_id"]):
            raise NotFoundError("client not found")
        tax_rate = float(data.get("tax_rate") or 0)
        if tax_rate < 0 or tax_rate > 1:
            raise ValueError("tax_rate must be between 0 and 1")
        discount = _require_non_negative(data.get("discount") or 0, "discount")
        reserved: Dict[int, int] = {}
        items = [self._build_item(dict(raw), reserved) for raw in raw_items]

        subtotal = round(sum(i.total for i in items), 2)
        tax = round(subtotal * tax_rate, 2)
        when = data.get("invoice_date") or models.utcnow()
        invoice = models.Invoice(
            gym_id=self.gym_id, client_id=data.get("client_id"), invoice_number=self.next_number(when),
            invoice_date=when, subtotal=subtotal, tax=tax, discount=discount,
            total=max(0.0, round(subtotal + tax - discount, 2)), status="pending",
            notes=data.get("notes"), created_by=self.actor.id,
        )
        try:
            self.repo.save(invoice, commit=False)
            for item in items:
                item.invoice_id = invoice.id
                self.repo.add_item(item)
            for product_id, quantity in reserved.items():
                product = self.products.get(product_id)
                product.stock -= quantity
                self.products.save(product, commit=False)
            self._log("sale", "invoice", invoice.id, f"Invoice {invoice.invoice_number} for {format_price(invoice.total)}",
                      {"items": len(items), "total": invoice.total}, commit=False)
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise ConflictError("invoice number already taken, retry")
        self.session.refresh(invoice)
        return invoice

    def pay(self, invoice_id: int, data: dict, today: Optional[date] = None) -> models.Payment:
        """Record a payment against an invoice and update its status."""
        invoice = self.get(invoice_id)
        if invoice.status == "cancelled":
            raise ConflictError("invoice is cancelled")
        if invoice.status == "paid":
            raise ConflictError("invoice already paid")
        paid = sum(billing.collected_amount(p) for p in repositories.PaymentRepository(self.session, self.gym_id).search(
            invoice_id=invoice.id, status="completed"))
        outstanding = round(invoice.total - paid, 2)
        if data.get("amount") is None:
            data["amount"] = outstanding
        if float(data["amount"]) > outstanding + MONEY_TOLERANCE:
            raise ValueError(f"amount exceeds outstanding balance {outstanding}")
        data.update({
            "client_id": invoice.client_id,
            "invoice_id": invoice.id,
            "status": "completed",
            "is_partial": float(data["amount"]) + MONEY_TOLERANCE < outstanding,
        })
        return PaymentService(self.session, self.actor).record(data, today)

    def _restock(self, invoice: models.Invoice) -> None:
        for item in self.repo.items(invoice.id):
            if item.item_type != "product" or item.item_id is None:
                continue
            product = self.products.get(item.item_id)
            if product is not None:
                product.stock += item.quantity
                self.products.save(product, commit=False)

    def cancel(self, invoice_id: int) -> models.Invoice:
        """Cancel an unpaid invoice and return its products to stock."""
        invoice = self.get(invoice_id)
        if invoice.status == "cancelled":
            raise ConflictError("invoice already cancelled")
        if repositories.PaymentRepository(self.session, self.gym_id).search(invoice_id=invoice.id, status="completed"):
            raise ConflictError("invoice has payments; cancel them first")
        self._restock(invoice)
        invoice.status = "cancelled"
        self.repo.save(invoice, commit=False)
        self._log("cancel", "invoice", invoice.id, f"Cancelled invoice {invoice.invoice_number}", commit=False)
        self.session.commit()
        self.session.refresh(invoice)
        return invoice

    def delete(self, invoice_id: int) -> None:
        invoice = self.get(invoice_id)
        if invoice.status not in ("pending", "cancelled"):
            raise ConflictError("only pending or cancelled invoices can be deleted")
        if repositories.PaymentRepository(self.session, self.gym_id).search(invoice_id=invoice.id):
            raise ConflictError("invoice has payment records")
        if invoice.status == "pending":
            self._restock(invoice)
        number = invoice.invoice_number
        self.repo.delete(invoice, commit=False)
        self._log("delete", "invoice", invoice_id, f"Deleted invoice {number}", commit=False)
        self.session.commit()


# -- cash closings ------------------------------------------------------------

def closing_totals(payments) -> dict:
    """Split collected money into cash, transfer and other buckets."""
    cash = transfer = other = 0.0
    for p in payments:
        if p.split_payment:
            cash += float(p.split_payment.get("cash", 0) or 0)
            transfer += float(p.split_payment.get("transfer", 0) or 0)
        elif p.method == "cash":
            cash += p.amount
        elif p.method in ("transfer", "card"):
            transfer += p.amount
        else:
            other += p.amount
    cash, transfer, other = round(cash, 2), round(transfer, 2), round(other, 2)
    return {"cash": cash, "transfer": transfer, "other": other, "total": round(cash + transfer + other, 2)}


class CashClosingService(_ActorService):
    def __init__(self, session: Session, actor: models.GymAccount):
        super().__init__(session, actor)
        self.repo = repositories.CashClosingRepository(session, self.gym_id)
        self.payments = repositories.PaymentRepository(session, self.gym_id)

    def open(self, opening_cash: float, notes: Optional[str] = None) -> models.CashClosing:
        if self.repo.open_for_account(self.actor.id):
            raise ConflictError("you already have an open cash register")
        closing = models.CashClosing(
            gym_id=self.gym_id, account_id=self.actor.id,
            opening_cash=_require_non_negative(opening_cash, "opening_cash"), notes=notes,
        )
        self.repo.save(closing)
        self._log("create", "cash_closing", closing.id, f"Opened cash register with {format_price(closing.opening_cash)}")
        return closing

    def _summary(self, closing: models.CashClosing) -> dict:
        totals = closing_totals(self.payments.list_for_closing(closing.id))
        expected_cash = round(closing.opening_cash + totals["cash"], 2)
        out = {**closing.model_dump(), "totals": totals, "expected_cash": expected_cash}
        out["difference"] = round(closing.closing_cash - expected_cash, 2) if closing.closing_cash is not None else None
        return out

    def current(self) -> Optional[dict]:
        closing = self.repo.open_for_account(self.actor.id)
        return self._summary(closing) if closing else None

    def close(self, closing_cash: float, notes: Optional[str] = None) -> dict:
        """Close the actor's open register and freeze its totals."""
        closing = self.repo.open_for_account(self.actor.id)
        if not closing:
            raise ConflictError("no open cash register")
        closing_cash = _require_non_negative(closing_cash, "closing_cash")
        totals = closing_totals(self.payments.list_for_closing(closing.id))
        closing.closing_cash = closing_cash
        closing.closing_time = models.utcnow()
        closing.total_cash_received = totals["cash"]
        closing.total_transfer_received = totals["transfer"]
        closing.total_other_received = totals["other"]
        closing.total_received = totals["total"]
        closing.status = "closed"
        if notes:
            closing.notes = f"{closing.notes}\n{notes}" if closing.notes else notes
        self.repo.save(closing, commit=False)
        summary = self._summary(closing)
        self._log("update", "cash_closing", closing.id,
                  f"Closed cash register: received {format_price(totals['total'])}, difference {format_price(summary['difference'])}",
                  {"totals": totals, "difference": summary["difference"]}, commit=False)
        self.session.commit()
        return summary

    def history(self, start: Optional[date] = None, end: Optional[date] = None) -> dict:
        start_dt, end_dt = _day_bounds(start, end)
        closings = self.repo.history(start_dt, end_dt)
        closed = [c for c in closings if c.status == "closed"]
        return {
            "items": closings,
            "totals": {
                "count": len(closed),
                "total_cash": round(sum(c.total_cash_received for c in closed), 2),
                "total_transfer": round(sum(c.total_transfer_received for c in closed), 2),
                "total_other": round(sum(c.total_other_received for c in closed), 2),
                "total_received": round(sum(c.total_received for c in closed), 2),
            },
        }


# -- reports ------------------------------------------------------------------

class ReportService(_ActorService):
    """Dashboard metrics and revenue reports computed from stored rows."""

    def _load(self):
        clients = repositories.ClientRepository(self.session, self.gym_id).list()
        memberships = repositories.MembershipRepository(self.session, self.gym_id).list()
        plans = repositories.MembershipTypeRepository(self.session, self.gym_id).list()
        payments = repositories.PaymentRepository(self.session, self.gym_id).search()
        return clients, memberships, plans, payments

    def dashboard(self, today: Optional[date] = None) -> dict:
        today = today or date.today()
        clients, memberships, plans, payments = self._load()
        completed = [p for p in payments if p.status == "completed"]
        current = [m for m in memberships if m.status != "cancelled" and m.end_date >= today]
        month_start = today.replace(day=1)
        weekday = (today.weekday() + 1) % 7
        classes = repositories.ClassRepository(self.session, self.gym_id).list()

        daily = round(sum(billing.collected_amount(p) for p in completed if p.payment_date == today), 2)
        monthly = round(sum(billing.collected_amount(p) for p in completed if month_start <= p.payment_date <= today), 2)
        weekly = billing.calculate_weekly_revenue(completed, today)
        debt = billing.calculate_total_overdue_debt(
            [m for m in memberships if m.status != "cancelled"], plans, completed, clients, today)
        return {
            "active_clients": len({m.client_id for m in current}),
            "active_memberships": len(current),
            "daily_revenue": daily,
            "weekly_revenue": weekly,
            "monthly_revenue": monthly,
            "classes_today": sum(1 for c in classes if c.status == "active" and weekday in (c.days_of_week or [])),
            "new_clients_this_month": repositories.ClientRepository(self.session, self.gym_id).count_created_since(
                datetime.combine(month_start, time.min, tzinfo=timezone.utc)),
            "total_overdue_debt": debt,
            "currency": settings.DEFAULT_CURRENCY,
            "formatted": {
                "daily_revenue": format_price(daily),
                "weekly_revenue": format_price(weekly),
                "monthly_revenue": format_price(monthly),
                "total_overdue_debt": format_price(debt),
            },
        }

    def revenue(self, start: date, end: date) -> dict:
        """Revenue for `[start, end]` compared with the preceding period of equal length."""
        if end < start:
            raise ValueError("end must be on or after start")
        _, memberships, plans, payments = self._load()
        span = (end - start).days + 1
        prev_start, prev_end = start - timedelta(days=span), start - timedelta(days=1)
        in_range = [p for p in payments if p.status == "completed" and start <= p.payment_date <= end]
        previous = [p for p in payments if p.status == "completed" and prev_start <= p.payment_date <= prev_end]
        total = round(sum(billing.collected_amount(p) for p in in_range), 2)
        previous_total = round(sum(billing.collected_amount(p) for p in previous), 2)
        change = round((total - previous_total) / previous_total * 100, 1) if previous_total > 0 else 0.0

        by_method: Dict[str, float] = {}
        for p in in_range:
            if p.split_payment:
                for key in ("cash", "transfer"):
                    by_method[key] = by_method.get(key, 0.0) + float(p.split_payment.get(key, 0) or 0)
            else:
                by_method[p.method] = by_method.get(p.method, 0.0) + p.amount

        plan_names = {pl.id: pl.name for pl in plans}
        membership_plan = {m.id: plan_names.get(m.membership_type_id, "unknown") for m in memberships}
        by_plan: Dict[str, float] = {}
        for p in in_range:
            if p.membership_id is not None:
                name = membership_plan.get(p.membership_id, "unknown")
                by_plan[name] = by_plan.get(name, 0.0) + billing.collected_amount(p)

        paying_clients = {p.client_id for p in in_range if p.client_id is not None}
        return {
            "start": start,
            "end": end,
            "total_revenue": total,
            "previous_revenue": previous_total,
            "revenue_change_pct": change,
            "revenue_by_method": {k: round(v, 2) for k, v in sorted(by_method.items())},
            "revenue_by_plan": [
                {"plan": k, "amount": round(v, 2)} for k, v in sorted(by_plan.items(), key=lambda kv: -kv[1])
            ],
            "pending_payments": sum(1 for p in payments if p.status == "pending" and start <= p.payment_date <= end),
            "average_per_client": round(total / len(paying_clients), 2) if paying_clients else 0.0,
            "currency": settings.DEFAULT_CURRENCY,
            "formatted_total": format_price(total),
        }
