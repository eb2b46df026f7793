"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the gymdesk backend.
Controllers are intentionally thin: they accept requests, delegate to
services, and return JSON responses. Service exceptions are translated
to HTTP status codes by the exception handlers registered below:

- ValueError -> 400
- PermissionError -> 403
- services.NotFoundError -> 404
- services.ConflictError -> 409

Endpoint groups (all under /api and authenticated except sign-up/login):
auth, accounts, gym, clients, membership-types, memberships, payments,
trainers, classes, products, invoices, cash-closings, audit-logs, reports.
"""

from dataclasses import asdict
from datetime import date
import json
import logging
import time
from typing import Optional
import uuid

from fastapi import FastAPI, Depends, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse, Response
from sqlmodel import Session

from . import models, schemas, services
from .auth import get_current_account, require_admin, require_staff
from .config import settings
from .database import create_db_and_tables, get_session
from .utils.throttle import LoginThrottle

app = FastAPI(title="gymdesk API")
logger = logging.getLogger("gymdesk.api")
if not logger.handlers:
    logging.basicConfig(level=settings.LOG_LEVEL)
_login_throttle = LoginThrottle(max_failures=settings.LOGIN_RATE_LIMIT_PER_MIN, window_seconds=60)

if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    response: Response
    try:
        response = await call_next(request)
    except Exception:
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception(
            "request_failed %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "duration_ms": elapsed_ms,
                    "client": request.client.host if request.client else "unknown",
                },
                ensure_ascii=True,
            ),
        )
        raise
    response.headers["X-Request-ID"] = req_id
    elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
    if request.url.path.startswith("/api"):
        logger.info(
            "request_done %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "status_code": response.status_code,
                    "duration_ms": elapsed_ms,
                    "client": request.client.host if request.client else "unknown",
                },
                ensure_ascii=True,
            ),
        )
    return response


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return _error(400, exc)


@app.exception_handler(PermissionError)
async def permission_error_handler(request: Request, exc: PermissionError):
    return _error(403, exc)


@app.exception_handler(services.NotFoundError)
async def not_found_handler(request: Request, exc: services.NotFoundError):
    return _error(404, exc)


@app.exception_handler(services.ConflictError)
async def conflict_handler(request: Request, exc: services.ConflictError):
    return _error(409, exc)


def _client_key(request: Request, email: str) -> str:
    host = request.client.host if request.client else "unknown"
    return f"{host}:{(email or '').strip().lower()}"


# -- auth ---------------------------------------------------------------------

@app.post("/api/auth/register", status_code=201)
def register(payload: schemas.RegisterIn, db: Session = Depends(get_session)):
    gym, account = services.AuthService(db).register_gym(payload.gym_name, payload.email, payload.name, payload.password)
    return {
        "access_token": services.issue_token(account),
        "token_type": "bearer",
        "gym": gym,
        "account": services.account_out(account),
    }


@app.post("/api/auth/login", response_model=schemas.TokenOut)
def login(payload: schemas.LoginIn, request: Request, db: Session = Depends(get_session)):
    key = _client_key(request, payload.email)
    allowed, retry_after = _login_throttle.check(key)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail=f"too many failed attempts; retry after {retry_after}s",
            headers={"Retry-After": str(retry_after)},
        )
    token = services.AuthService(db).authenticate(payload.email, payload.password)
    if not token:
        _login_throttle.record_failure(key)
        logger.warning("failed login for %s from %s", payload.email, key.split(":", 1)[0])
        raise HTTPException(status_code=401, detail="invalid credentials")
    _login_throttle.reset(key)
    return {"access_token": token, "token_type": "bearer"}


@app.get("/api/auth/me")
def me(account: models.GymAccount = Depends(get_current_account)):
    return services.account_out(account)


# -- accounts -----------------------------------------------------------------

@app.get("/api/accounts")
def list_accounts(db: Session = Depends(get_session), account: models.GymAccount = Depends(require_admin)):
    return [services.account_out(a) for a in services.AccountService(db, account).list()]


@app.post("/api/accounts", status_code=201)
def create_account(payload: schemas.AccountIn, db: Session = Depends(get_session), account: models.GymAccount = Depends(require_admin)):
    created = services.AccountService(db, account).create(payload.model_dump())
    return services.account_out(created)


@app.patch("/api/accounts/{account_id}")
def update_account(account_id: int, payload: schemas.AccountUpdate, db: Session = Depends(get_session),
                   account: models.GymAccount = Depends(require_admin)):
    updated = services.AccountService(db, account).update(account_id, payload.model_dump(exclude_unset=True))
    return services.account_out(updated)


@app.delete("/api/accounts/{account_id}", status_code=204)
def delete_account(account_id: int, db: Session = Depends(get_session), account: models.GymAccount = Depends(require_admin)):
    services.AccountService(db, account).delete(account_id)
    return Response(status_code=204)


# -- gym ----------------------------------------------------------------------

@app.get("/api/gym")
def get_gym(db: Session = Depends(get_session), account: models.GymAccount = Depends(get_current_account)):
    return services.GymService(db, account).get()


@app.patch("/api/gym")
def update_gym(payload: schemas.GymUpdate, db: Session = Depends(get_session), account: models.GymAccount = Depends(require_admin)):
    return services.GymService(db, account).update(payload.model_dump(exclude_unset=True))


@app.post("/api/gym/logo")
def upload_logo(file: UploadFile = File(...), db: Session = Depends(get_session), account: models.GymAccount = Depends(require_admin)):
    if not file:
        raise HTTPException(status_code=400, detail="no file")
    payload = file.file.read(settings.MAX_UPLOAD_BYTES + 1)
    if len(payload) > settings.MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="file too large")
    return services.GymService(db, account).set_logo(payload)


@app.get("/api/gym/logo")
def get_logo(db: Session = Depends(get_session), account: models.GymAccount = Depends(get_current_account)):
    gym = services.GymService(db, account).get()
    if not gym.logo_path:
        raise services.NotFoundError("gym has no logo")
    return FileResponse(gym.logo_path)


# -- clients ------------------------------------------------------------------

@app.get("/api/clients")
def list_clients(q: Optional[str] = None, status: Optional[str] = None, db: Session = Depends(get_session),
                 account: models.GymAccount = Depends(get_current_account)):
    return services.ClientService(db, account).list(q, status)


@app.post("/api/clients", status_code=201)
def create_client(payload: schemas.ClientIn, db: Session = Depends(get_session), account: models.GymAccount = Depends(require_staff)):
    return services.ClientService(db, account).create(payload.model_dump(exclude_unset=True))


@app.get("/api/clients/{client_id}")
def get_client(client_id: int, db: Session = Depends(get_session), account: models.GymAccount = Depends(get_current_account)):
    detail = services.ClientService(db, account).detail(client_id)
    return {
        "client": detail["client"],
        "memberships": [
            {
                "membership": row["membership"],
                "plan": row["plan"],
                "payment_status": asdict(row["payment_status"]),
            }
            for row in detail["memberships"]
        ],
        "payments": detail["payments"],
    }


@app.patch("/api/clients/{client_id}")
def update_client(client_id: int, payload: schemas.ClientUpdate, db: Session = Depends(get_session),
                  account: models.GymAccount = Depends(require_staff)):
    return services.ClientService(db, account).update(client_id, payload.model_dump(exclude_unset=True))


@app.delete("/api/clients/{client_id}", status_code=204)
def delete_client(client_id: int, db: Session = Depends(get_session), account: models.GymAccount = Depends(require_admin)):
    services.ClientService(db, account).delete(client_id)
    return Response(status_code=204)


# -- membership types ---------------------------------------------------------

@app.get("/api/membership-types")
def list_membership_types(active_only: bool = False, db: Session = Depends(get_session),
                          account: models.GymAccount = Depends(get_current_account)):
    return services.MembershipTypeService(db, account).list(active_only)


@app.get("/api/membership-types/templates")
def list_plan_templates(account: models.GymAccount = Depends(get_current_account)):
    return services.MembershipTypeService.templates()


@app.post("/api/membership-types/templates/{template_id}", status_code=201)
def create_plan_from_template(template_id: str, db: Session = Depends(get_session),
                              account: models.GymAccount = Depends(require_admin)):
    return services.MembershipTypeService(db, account).create_from_template(template_id)


@app.post("/api/membership-types", status_code=201)
def create_membership_type(payload: schemas.PlanIn, db: Session = Depends(get_session),
                           account: models.GymAccount = Depends(require_admin)):
    return services.MembershipTypeService(db, account).create(payload.model_dump())


@app.patch("/api/membership-types/{type_id}")
def update_membership_type(type_id: int, payload: schemas.PlanUpdate, db: Session = Depends(get_session),
                           account: models.GymAccount = Depends(require_admin)):
    return services.MembershipTypeService(db, account).update(type_id, payload.model_dump(exclude_unset=True))


@app.delete("/api/membership-types/{type_id}", status_code=204)
def delete_membership_type(type_id: int, db: Session = Depends(get_session), account: models.GymAccount = Depends(require_admin)):
    services.MembershipTypeService(db, account).delete(type_id)
    return Response(status_code=204)


# -- memberships --------------------------------------------------------------

@app.get("/api/memberships")
def list_memberships(client_id: Optional[int] = None, db: Session = Depends(get_session),
                     account: models.GymAccount = Depends(get_current_account)):
    return services.MembershipService(db, account).list(client_id)


@app.post("/api/memberships", status_code=201)
def create_membership(payload: schemas.MembershipIn, db: Session = Depends(get_session),
                      account: models.GymAccount = Depends(require_staff)):
    return services.MembershipService(db, account).create(payload.model_dump())


@app.post("/api/memberships/refresh-statuses")
def refresh_membership_statuses(db: Session = Depends(get_session), account: models.GymAccount = Depends(require_admin)):
    return {"changed": services.MembershipService(db, account).refresh_statuses()}


@app.get("/api/memberships/{membership_id}")
def get_membership(membership_id: int, db: Session = Depends(get_session), account: models.GymAccount = Depends(get_current_account)):
    return services.MembershipService(db, account).get(membership_id)


@app.patch("/api/memberships/{membership_id}")
def update_membership(membership_id: int, payload: schemas.MembershipUpdate, db: Session = Depends(get_session),
                      account: models.GymAccount = Depends(require_staff)):
    return services.MembershipService(db, account).update(membership_id, payload.model_dump(exclude_unset=True))


@app.post("/api/memberships/{membership_id}/cancel")
def cancel_membership(membership_id: int, db: Session = Depends(get_session), account: models.GymAccount = Depends(require_staff)):
    return services.MembershipService(db, account).cancel(membership_id)


@app.get("/api/memberships/{membership_id}/payment-status")
def membership_payment_status(membership_id: int, db: Session = Depends(get_session),
                              account: models.GymAccount = Depends(get_current_account)):
    return asdict(services.MembershipService(db, account).payment_status(membership_id))


# -- payments -----------------------------------------------------------------

@app.get("/api/payments")
def list_payments(client_id: Optional[int] = None, membership_id: Optional[int] = None, invoice_id: Optional[int] = None,
                  status: Optional[str] = None, start: Optional[date] = None, end: Optional[date] = None,
                  db: Session = Depends(get_session), account: models.GymAccount = Depends(require_staff)):
    return services.PaymentService(db, account).list(
        client_id=client_id, membership_id=membership_id, invoice_id=invoice_id, status=status, start=start, end=end,
    )


@app.get("/api/payments/debtors")
def list_debtors(db: Session = Depends(get_session), account: models.GymAccount = Depends(require_staff)):
    return services.PaymentService(db, account).debtors()


@app.post("/api/payments", status_code=201)
def record_payment(payload: schemas.PaymentIn, db: Session = Depends(get_session), account: models.GymAccount = Depends(require_staff)):
    return services.PaymentService(db, account).record(payload.model_dump(exclude_unset=True))


@app.get("/api/payments/{payment_id}")
def get_payment(payment_id: int, db: Session = Depends(get_session), account: models.GymAccount = Depends(require_staff)):
    return services.PaymentService(db, account).get(payment_id)


@app.patch("/api/payments/{payment_id}")
def update_payment(payment_id: int, payload: schemas.PaymentUpdate, db: Session = Depends(get_session),
                   account: models.GymAccount = Depends(require_staff)):
    return services.PaymentService(db, account).update(payment_id, payload.model_dump(exclude_unset=True))


@app.post("/api/payments/{payment_id}/cancel")
def cancel_payment(payment_id: int, db: Session = Depends(get_session), account: models.GymAccount = Depends(require_staff)):
    return services.PaymentService(db, account).cancel(payment_id)


# -- trainers -----------------------------------------------------------------

@app.get("/api/trainers")
def list_trainers(db: Session = Depends(get_session), account: models.GymAccount = Depends(get_current_account)):
    return services.TrainerService(db, account).list()


@app.post("/api/trainers", status_code=201)
def create_trainer(payload: schemas.TrainerIn, db: Session = Depends(get_session), account: models.GymAccount = Depends(require_admin)):
    return services.TrainerService(db, account).create(payload.model_dump(exclude_unset=True))


@app.get("/api/trainers/{trainer_id}")
def get_trainer(trainer_id: int, db: Session = Depends(get_session), account: models.GymAccount = Depends(get_current_account)):
    return services.TrainerService(db, account).get(trainer_id)


@app.patch("/api/trainers/{trainer_id}")
def update_trainer(trainer_id: int, payload: schemas.TrainerUpdate, db: Session = Depends(get_session),
                   account: models.GymAccount = Depends(require_admin)):
    return services.TrainerService(db, account).update(trainer_id, payload.model_dump(exclude_unset=True))


@app.delete("/api/trainers/{trainer_id}", status_code=204)
def delete_trainer(trainer_id: int, db: Session = Depends(get_session), account: models.GymAccount = Depends(require_admin)):
    services.TrainerService(db, account).delete(trainer_id)
    return Response(status_code=204)


# -- classes ------------------------------------------------------------------

@app.get("/api/classes")
def list_classes(db: Session = Depends(get_session), account: models.GymAccount = Depends(get_current_account)):
    return services.ClassService(db, account).list()


@app.post("/api/classes", status_code=201)
def create_class(payload: schemas.ClassIn, db: Session = Depends(get_session), account: models.GymAccount = Depends(require_admin)):
    return services.ClassService(db, account).create(payload.model_dump())


@app.get("/api/classes/{class_id}")
def get_class(class_id: int, db: Session = Depends(get_session), account: models.GymAccount = Depends(get_current_account)):
    return services.ClassService(db, account).get(class_id)


@app.patch("/api/classes/{class_id}")
def update_class(class_id: int, payload: schemas.ClassUpdate, db: Session = Depends(get_session),
                 account: models.GymAccount = Depends(require_admin)):
    return services.ClassService(db, account).update(class_id, payload.model_dump(exclude_unset=True))


@app.delete("/api/classes/{class_id}", status_code=204)
def delete_class(class_id: int, db: Session = Depends(get_session), account: models.GymAccount = Depends(require_admin)):
    services.ClassService(db, account).delete(class_id)
    return Response(status_code=204)


@app.get("/api/classes/{class_id}/enrollments")
def list_enrollments(class_id: int, db: Session = Depends(get_session), account: models.GymAccount = Depends(get_current_account)):
    return services.ClassService(db, account).list_enrollments(class_id)


@app.post("/api/classes/{class_id}/enrollments", status_code=201)
def enroll_client(class_id: int, payload: schemas.EnrollIn, db: Session = Depends(get_session),
                  account: models.GymAccount = Depends(require_staff)):
    return services.ClassService(db, account).enroll(class_id, payload.client_id)


@app.delete("/api/classes/{class_id}/enrollments/{client_id}", status_code=204)
def unenroll_client(class_id: int, client_id: int, db: Session = Depends(get_session),
                    account: models.GymAccount = Depends(require_staff)):
    services.ClassService(db, account).unenroll(class_id, client_id)
    return Response(status_code=204)


@app.get("/api/classes/{class_id}/attendance")
def list_attendance(class_id: int, on: Optional[date] = None, db: Session = Depends(get_session),
                    account: models.GymAccount = Depends(get_current_account)):
    return services.ClassService(db, account).list_attendance(class_id, on)


@app.post("/api/classes/{class_id}/attendance")
def record_attendance(class_id: int, payload: schemas.AttendanceIn, db: Session = Depends(get_session),
                      account: models.GymAccount = Depends(get_current_account)):
    return services.ClassService(db, account).record_attendance(
        class_id, payload.client_id, payload.attendance_date, payload.present, payload.notes,
    )


# -- products -----------------------------------------------------------------

@app.get("/api/products")
def list_products(active_only: bool = False, db: Session = Depends(get_session),
                  account: models.GymAccount = Depends(get_current_account)):
    return services.ProductService(db, account).list(active_only)


@app.get("/api/products/inventory-summary")
def inventory_summary(db: Session = Depends(get_session), account: models.GymAccount = Depends(require_staff)):
    return services.ProductService(db, account).inventory_summary()


@app.post("/api/products", status_code=201)
def create_product(payload: schemas.ProductIn, db: Session = Depends(get_session), account: models.GymAccount = Depends(require_staff)):
    return services.ProductService(db, account).create(payload.model_dump())


@app.get("/api/products/{product_id}")
def get_product(product_id: int, db: Session = Depends(get_session), account: models.GymAccount = Depends(get_current_account)):
    return services.ProductService(db, account).get(product_id)


@app.patch("/api/products/{product_id}")
def update_product(product_id: int, payload: schemas.ProductUpdate, db: Session = Depends(get_session),
                   account: models.GymAccount = Depends(require_staff)):
    return services.ProductService(db, account).update(product_id, payload.model_dump(exclude_unset=True))


@app.delete("/api/products/{product_id}", status_code=204)
def delete_product(product_id: int, db: Session = Depends(get_session), account: models.GymAccount = Depends(require_admin)):
    services.ProductService(db, account).delete(product_id)
    return Response(status_code=204)


# -- invoices -----------------------------------------------------------------

@app.get("/api/invoices")
def list_invoices(status: Optional[str] = None, client_id: Optional[int] = None, db: Session = Depends(get_session),
                  account: models.GymAccount = Depends(require_staff)):
    return services.InvoiceService(db, account).list(status, client_id)


@app.post("/api/invoices", status_code=201)
def create_invoice(payload: schemas.InvoiceIn, db: Session = Depends(get_session), account: models.GymAccount = Depends(require_staff)):
    service = services.InvoiceService(db, account)
    invoice = service.create(payload.model_dump())
    return service.detail(invoice.id)


@app.get("/api/invoices/{invoice_id}")
def get_invoice(invoice_id: int, db: Session = Depends(get_session), account: models.GymAccount = Depends(require_staff)):
    return services.InvoiceService(db, account).detail(invoice_id)


@app.post("/api/invoices/{invoice_id}/pay", status_code=201)
def pay_invoice(invoice_id: int, payload: schemas.InvoicePayIn, db: Session = Depends(get_session),
                account: models.GymAccount = Depends(require_staff)):
    service = services.InvoiceService(db, account)
    payment = service.pay(invoice_id, payload.model_dump(exclude_unset=True))
    return {"payment": payment, "invoice": service.get(invoice_id)}


@app.post("/api/invoices/{invoice_id}/cancel")
def cancel_invoice(invoice_id: int, db: Session = Depends(get_session), account: models.GymAccount = Depends(require_staff)):
    return services.InvoiceService(db, account).cancel(invoice_id)


@app.delete("/api/invoices/{invoice_id}", status_code=204)
def delete_invoice(invoice_id: int, db: Session = Depends(get_session), account: models.GymAccount = Depends(require_admin)):
    services.InvoiceService(db, account).delete(invoice_id)
    return Response(status_code=204)


# -- cash closings ------------------------------------------------------------

@app.post("/api/cash-closings/open", status_code=201)
def open_cash_register(payload: schemas.CashOpenIn, db: Session = Depends(get_session),
                       account: models.GymAccount = Depends(require_staff)):
    return services.CashClosingService(db, account).open(payload.opening_cash, payload.notes)


@app.get("/api/cash-closings/current")
def current_cash_register(db: Session = Depends(get_session), account: models.GymAccount = Depends(require_staff)):
    current = services.CashClosingService(db, account).current()
    if current is None:
        raise services.NotFoundError("no open cash register")
    return current


@app.post("/api/cash-closings/close")
def close_cash_register(payload: schemas.CashCloseIn, db: Session = Depends(get_session),
                        account: models.GymAccount = Depends(require_staff)):
    return services.CashClosingService(db, account).close(payload.closing_cash, payload.notes)


@app.get("/api/cash-closings")
def cash_closing_history(start: Optional[date] = None, end: Optional[date] = None, db: Session = Depends(get_session),
                         account: models.GymAccount = Depends(require_admin)):
    return services.CashClosingService(db, account).history(start, end)


# -- audit log ----------------------------------------------------------------

@app.get("/api/audit-logs")
def query_audit_logs(page: int = 1, page_size: int = 50, action_type: Optional[str] = None,
                     entity_type: Optional[str] = None, account_id: Optional[int] = None,
                     start: Optional[date] = None, end: Optional[date] = None, search: Optional[str] = None,
                     db: Session = Depends(get_session), account: models.GymAccount = Depends(require_admin)):
    return services.AuditService(db, account.gym_id).query(
        page=page, page_size=page_size, action_type=action_type, entity_type=entity_type,
        account_id=account_id, start=start, end=end, search=search,
    )


@app.post("/api/audit-logs/cleanup")
def cleanup_audit_logs(retention_days: Optional[int] = None, db: Session = Depends(get_session),
                       account: models.GymAccount = Depends(require_admin)):
    return {"deleted": services.AuditService(db, account.gym_id).cleanup(retention_days, account_id=account.id)}


# -- reports ------------------------------------------------------------------

@app.get("/api/reports/dashboard")
def dashboard(db: Session = Depends(get_session), account: models.GymAccount = Depends(get_current_account)):
    return services.ReportService(db, account).dashboard()


@app.get("/api/reports/revenue")
def revenue_report(start: date, end: date, db: Session = Depends(get_session), account: models.GymAccount = Depends(require_admin)):
    return services.ReportService(db, account).revenue(start, end)


@app.get("/", response_class=HTMLResponse)
def home():
    return """
    <!doctype html>
    <html>
      <head><meta charset="utf-8"><title>gymdesk API</title></head>
      <body>
        <h1>gymdesk API</h1>
        <p>JSON endpoints live under <code>/api</code>. See <a href="/docs">/docs</a> for the interactive reference.</p>
      </body>
    </html>
    """


@app.get("/health")
def health():
    return {"status": "ok"}
