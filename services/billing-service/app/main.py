"""
Billing Service

Clients, time tracking, invoices built from unbilled time, payments,
expenses, customer statements and a summary dashboard.
"""

from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import AsyncGenerator, List, Optional

from fastapi import FastAPI, Depends, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response
from fastapi.security import OAuth2PasswordBearer
import uvicorn
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from . import crud, schemas
from .billing_calculator import BillingCalculator
from .core.config import settings
from .core.logging import get_logger, setup_logging
from .database import create_tables, get_db
from .document_renderer import DocumentRenderer
from .exceptions import (
    BillingError,
    ConcurrentBilling,
    DuplicateInvoiceNumber,
    DuplicateWorkType,
    EntryAlreadyBilled,
    InvalidExpense,
    InvalidRange,
    InvalidStatusTransition,
    InvoiceNotPayable,
    NotFound,
    OverApplication,
    RenderFailure,
)
from .reporting_service import DashboardAggregator
from .statement_reconciler import StatementReconciler

# Setup logging
setup_logging()
logger = get_logger("api")

calculator = BillingCalculator()
renderer = DocumentRenderer()
reconciler = StatementReconciler()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Create tables on startup"""
    logger.info(f"Starting {settings.APP_NAME} {settings.VERSION}")
    await create_tables()
    yield
    logger.info(f"{settings.APP_NAME} shut down")


app = FastAPI(
    title="Billing Service",
    description="Time-based invoicing, payments, statements and reporting for freelancers",
    version=settings.VERSION,
    lifespan=lifespan,
    openapi_tags=[
        {"name": "clients", "description": "Clients and their billing settings"},
        {"name": "time", "description": "Work types and time entries"},
        {"name": "invoices", "description": "Invoice preview, creation and management"},
        {"name": "documents", "description": "HTML and PDF invoice and statement documents"},
        {"name": "payments", "description": "Payments and their application to invoices"},
        {"name": "expenses", "description": "Business expenses and refunds"},
        {"name": "reporting", "description": "Statements and dashboard"}
    ]
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["*"],
)

# --- Error mapping ---

ERROR_STATUS_CODES = {
    InvalidRange: status.HTTP_400_BAD_REQUEST,
    NotFound: status.HTTP_404_NOT_FOUND,
    InvalidStatusTransition: status.HTTP_409_CONFLICT,
    DuplicateInvoiceNumber: status.HTTP_409_CONFLICT,
    DuplicateWorkType: status.HTTP_409_CONFLICT,
    EntryAlreadyBilled: status.HTTP_409_CONFLICT,
    ConcurrentBilling: status.HTTP_409_CONFLICT,
    InvalidExpense: status.HTTP_422_UNPROCESSABLE_ENTITY,
    OverApplication: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvoiceNotPayable: status.HTTP_422_UNPROCESSABLE_ENTITY,
    RenderFailure: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    status_code = status.HTTP_400_BAD_REQUEST
    for error_class in type(exc).__mro__:
        if error_class in ERROR_STATUS_CODES:
            status_code = ERROR_STATUS_CODES[error_class]
            break

    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected ({status_code}): {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})

# --- Security ---

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/token")


def get_current_user_id(token: str = Depends(oauth2_scheme)) -> str:
    """Extract user ID from JWT token"""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.AUTH_SECRET_KEY, algorithms=[settings.AUTH_ALGORITHM])
    except JWTError:
        raise credentials_exception

    user_id = payload.get("sub")
    if not user_id:
        raise credentials_exception
    return user_id


def company_details() -> schemas.CompanyDetails:
    return schemas.CompanyDetails(**settings.company_details())


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "ok", "service": "billing-service", "timestamp": datetime.now(timezone.utc)}

# === CLIENT ENDPOINTS ===

@app.post("/clients", response_model=schemas.Client, status_code=status.HTTP_201_CREATED, tags=["clients"])
async def create_client(
    client_data: schemas.ClientCreate,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    return await crud.create_client(db, client_data)


@app.get("/clients", response_model=List[schemas.Client], tags=["clients"])
async def list_clients(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    return await crud.list_clients(db)


@app.get("/clients/{client_id}", response_model=schemas.Client, tags=["clients"])
async def get_client(
    client_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    return await crud.get_client(db, client_id)


@app.put("/clients/{client_id}", response_model=schemas.Client, tags=["clients"])
async def update_client(
    client_id: int,
    client_update: schemas.ClientUpdate,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    """Update rate or discount; only future invoices are affected"""
    return await crud.update_client(db, client_id, client_update)

# === WORK TYPE AND TIME ENTRY ENDPOINTS ===

@app.post("/work-types", response_model=schemas.WorkType, status_code=status.HTTP_201_CREATED, tags=["time"])
async def create_work_type(
    work_type_data: schemas.WorkTypeCreate,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    return await crud.create_work_type(db, work_type_data)


@app.get("/work-types", response_model=List[schemas.WorkType], tags=["time"])
async def list_work_types(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    return await crud.list_work_types(db)


@app.post("/time-entries", response_model=schemas.TimeEntry, status_code=status.HTTP_201_CREATED, tags=["time"])
async def create_time_entry(
    entry_data: schemas.TimeEntryCreate,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    return await crud.create_time_entry(db, entry_data)


@app.get("/time-entries", response_model=List[schemas.TimeEntry], tags=["time"])
async def list_time_entries(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    client_id: Optional[int] = None,
    date_from: Optional[date] = Query(None, alias="from"),
    date_to: Optional[date] = Query(None, alias="to"),
    is_invoiced: Optional[bool] = None
):
    return await crud.list_time_entries(
        db, client_id=client_id, date_from=date_from, date_to=date_to, is_invoiced=is_invoiced
    )


@app.put("/time-entries/{entry_id}", response_model=schemas.TimeEntry, tags=["time"])
async def update_time_entry(
    entry_id: int,
    entry_data: schemas.TimeEntryCreate,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    """Edit an entry that is not on an invoice yet"""
    return await crud.update_time_entry(db, entry_id, entry_data)


@app.delete("/time-entries/{entry_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["time"])
async def delete_time_entry(
    entry_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    await crud.delete_time_entry(db, entry_id)

# === INVOICE ENDPOINTS ===

async def _build_preview(db: AsyncSession, request: schemas.InvoicePreviewRequest) -> schemas.InvoicePreview:
    calculator.validate_range(request.start_date, request.end_date)
    client = schemas.Client.model_validate(await crud.get_client(db, request.client_id))
    entries = await crud.list_unbilled_time_entries(db, request.client_id, request.start_date, request.end_date)
    return calculator.preview(
        client,
        [schemas.TimeEntry.model_validate(entry) for entry in entries],
        request.start_date,
        request.end_date
    )


@app.post("/invoices/preview-from-time-entries", response_model=schemas.InvoicePreview, tags=["invoices"])
async def preview_invoice_from_time_entries(
    request: schemas.InvoicePreviewRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    """Show the lines an invoice would get; nothing is written"""
    return await _build_preview(db, request)


@app.post(
    "/invoices/from-time-entries",
    response_model=schemas.Invoice,
    status_code=status.HTTP_201_CREATED,
    tags=["invoices"]
)
async def create_invoice_from_time_entries(
    request: schemas.InvoiceFromTimeEntriesRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    """Bill every unbilled entry of the client in the range on one new draft invoice"""
    preview = await _build_preview(db, request)
    if preview.is_empty:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No uninvoiced time entries found for this client in the selected date range"
        )

    invoice_number = request.invoice_number or await crud.next_invoice_number(db)
    due_date = request.due_date or calculator.default_due_date(
        request.invoice_date, settings.DEFAULT_PAYMENT_TERMS_DAYS
    )
    draft = calculator.build_invoice(preview, invoice_number, request.invoice_date, due_date)
    return await crud.create_invoice_and_mark_entries_billed(db, draft)


@app.post("/invoices", response_model=schemas.Invoice, status_code=status.HTTP_201_CREATED, tags=["invoices"])
async def create_manual_invoice(
    request: schemas.ManualInvoiceCreate,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    """Create an invoice from hand-entered lines priced at the client's current settings"""
    client = schemas.Client.model_validate(await crud.get_client(db, request.client_id))
    for line in request.lines:
        await crud.get_work_type(db, line.work_type_id)

    invoice_number = request.invoice_number or await crud.next_invoice_number(db)
    due_date = request.due_date or calculator.default_due_date(
        request.invoice_date, settings.DEFAULT_PAYMENT_TERMS_DAYS
    )
    draft = calculator.build_manual_invoice(client, request, invoice_number, due_date)
    return await crud.create_invoice_and_mark_entries_billed(db, draft)


@app.get("/invoices", response_model=List[schemas.Invoice], tags=["invoices"])
async def list_invoices(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    client_id: Optional[int] = None,
    status: Optional[schemas.InvoiceStatus] = None
):
    return await crud.list_invoices(db, client_id=client_id, status=status)


@app.get("/invoices/next-invoice-number", tags=["invoices"])
async def get_next_invoice_number(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    return {"next_invoice_number": await crud.next_invoice_number(db)}


@app.get("/invoices/{invoice_id}", response_model=schemas.Invoice, tags=["invoices"])
async def get_invoice(
    invoice_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    return await crud.get_invoice(db, invoice_id)


@app.patch("/invoices/{invoice_id}/status", response_model=schemas.Invoice, tags=["invoices"])
async def update_invoice_status(
    invoice_id: int,
    status_update: schemas.InvoiceStatusUpdate,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    return await crud.update_invoice_status(db, invoice_id, status_update.status)


@app.patch("/invoices/{invoice_id}/lines/{line_id}", response_model=schemas.Invoice, tags=["invoices"])
async def update_invoice_line(
    invoice_id: int,
    line_id: int,
    line_update: schemas.InvoiceLineUpdate,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    """Edit a line description; amounts and totals do not change"""
    return await crud.update_line_description(db, invoice_id, line_id, line_update.description)


@app.delete("/invoices/{invoice_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["invoices"])
async def delete_invoice(
    invoice_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    """Delete an invoice; its time entries become billable again"""
    await crud.delete_invoice(db, invoice_id)

# === DOCUMENT ENDPOINTS ===

async def _invoice_document(db: AsyncSession, invoice_id: int) -> str:
    invoice = schemas.Invoice.model_validate(await crud.get_invoice(db, invoice_id))
    return renderer.render_invoice(invoice, company=company_details())


@app.get("/invoices/{invoice_id}/html", response_class=HTMLResponse, tags=["documents"])
async def get_invoice_html(
    invoice_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    return HTMLResponse(content=await _invoice_document(db, invoice_id))


@app.get("/invoices/{invoice_id}/pdf", tags=["documents"])
async def download_invoice_pdf(
    invoice_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    """Download the invoice as PDF"""
    invoice = await crud.get_invoice(db, invoice_id)
    document = await _invoice_document(db, invoice_id)
    pdf_bytes = await run_in_threadpool(renderer.render_pdf, document)
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="INV-{invoice.invoice_number}.pdf"'}
    )

# === PAYMENT ENDPOINTS ===

@app.post("/payments", response_model=schemas.Payment, status_code=status.HTTP_201_CREATED, tags=["payments"])
async def create_payment(
    payment_data: schemas.PaymentCreate,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    """Record a payment and apply it to one or more invoices"""
    return await crud.create_payment(db, payment_data)


@app.get("/payments", response_model=List[schemas.Payment], tags=["payments"])
async def list_payments(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    client_id: Optional[int] = None
):
    return await crud.list_payments(db, client_id=client_id)


@app.get("/payments/{payment_id}", response_model=schemas.Payment, tags=["payments"])
async def get_payment(
    payment_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    return await crud.get_payment(db, payment_id)


@app.delete("/payments/{payment_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["payments"])
async def delete_payment(
    payment_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    await crud.delete_payment(db, payment_id)

# === EXPENSE ENDPOINTS ===

@app.post("/expenses", response_model=schemas.Expense, status_code=status.HTTP_201_CREATED, tags=["expenses"])
async def create_expense(
    expense_data: schemas.ExpenseCreate,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    return await crud.create_expense(db, expense_data)


@app.get("/expenses", response_model=List[schemas.Expense], tags=["expenses"])
async def list_expenses(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    vendor: Optional[str] = None,
    expense_date_from: Optional[date] = Query(None, alias="from"),
    expense_date_to: Optional[date] = Query(None, alias="to"),
    is_refund: Optional[bool] = None
):
    filters = schemas.ExpenseFilters(
        vendor=vendor,
        expense_date_from=expense_date_from,
        expense_date_to=expense_date_to,
        is_refund=is_refund
    )
    return await crud.list_expenses(db, filters)


@app.get("/expenses/stats/summary", response_model=schemas.ExpenseSummary, tags=["expenses"])
async def get_expense_summary(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    expense_date_from: Optional[date] = Query(None, alias="from"),
    expense_date_to: Optional[date] = Query(None, alias="to")
):
    """Expense and refund counts and totals, net spend and distinct vendors"""
    if expense_date_from and expense_date_to and expense_date_from > expense_date_to:
        raise InvalidRange(expense_date_from, expense_date_to)
    return await crud.get_expense_summary(db, expense_date_from, expense_date_to)


@app.get("/expenses/{expense_id}", response_model=schemas.Expense, tags=["expenses"])
async def get_expense(
    expense_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    return await crud.get_expense(db, expense_id)


@app.put("/expenses/{expense_id}", response_model=schemas.Expense, tags=["expenses"])
async def update_expense(
    expense_id: int,
    expense_update: schemas.ExpenseUpdate,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    return await crud.update_expense(db, expense_id, expense_update)


@app.delete("/expenses/{expense_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["expenses"])
async def delete_expense(
    expense_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    await crud.delete_expense(db, expense_id)

# === REPORTING ENDPOINTS ===

async def _build_statement(db: AsyncSession, client_id: int, start_date: date, end_date: date) -> schemas.Statement:
    if start_date > end_date:
        raise InvalidRange(start_date, end_date)
    client = schemas.Client.model_validate(await crud.get_client(db, client_id))
    invoices = [schemas.Invoice.model_validate(invoice) for invoice in await crud.list_invoices(db, client_id=client_id)]
    payments = [schemas.Payment.model_validate(payment) for payment in await crud.list_payments(db, client_id=client_id)]
    return reconciler.build(client, invoices, payments, start_date, end_date, company=company_details())


@app.get("/statements/{client_id}", response_model=schemas.Statement, tags=["reporting"])
async def get_statement(
    client_id: int,
    start_date: date,
    end_date: date,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    """Client statement with beginning balance and running balance per transaction"""
    return await _build_statement(db, client_id, start_date, end_date)


@app.get("/statements/{client_id}/html", response_class=HTMLResponse, tags=["documents"])
async def get_statement_html(
    client_id: int,
    start_date: date,
    end_date: date,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    statement = await _build_statement(db, client_id, start_date, end_date)
    return HTMLResponse(content=renderer.render_statement(statement))


@app.get("/statements/{client_id}/pdf", tags=["documents"])
async def download_statement_pdf(
    client_id: int,
    start_date: date,
    end_date: date,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    """Download the statement as PDF"""
    statement = await _build_statement(db, client_id, start_date, end_date)
    document = renderer.render_statement(statement)
    pdf_bytes = await run_in_threadpool(renderer.render_pdf, document)
    client_slug = "-".join(statement.client_name.split()) or "client"
    filename = f"Statement-{client_slug}-{start_date.isoformat()}-to-{end_date.isoformat()}.pdf"
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'}
    )


@app.get("/dashboard", response_model=schemas.DashboardSummary, tags=["reporting"])
async def get_dashboard(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    basis: schemas.AccountingBasis = schemas.AccountingBasis.ACCRUAL,
    as_of: Optional[date] = None
):
    """Summary figures and trailing-window comparisons"""
    clients = [schemas.Client.model_validate(client) for client in await crud.list_clients(db)]
    invoices = [schemas.Invoice.model_validate(invoice) for invoice in await crud.list_invoices(db)]
    payments = [schemas.Payment.model_validate(payment) for payment in await crud.list_payments(db)]
    entries = [schemas.TimeEntry.model_validate(entry) for entry in await crud.list_time_entries(db)]
    expenses = [schemas.Expense.model_validate(expense) for expense in await crud.list_expenses(db)]

    aggregator = DashboardAggregator(as_of=as_of or date.today())
    return aggregator.summary(
        basis, invoices, payments, entries, clients, expenses, windows=settings.DASHBOARD_WINDOWS
    )


if __name__ == "__main__":
    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower()
    )
