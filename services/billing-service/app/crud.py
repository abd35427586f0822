from typing import Dict, Iterable, List, Optional
from datetime import date
from decimal import Decimal
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, and_, func, desc
from sqlalchemy.exc import IntegrityError

from . import models, schemas
from .core.config import settings
from .core.logging import get_logger
from .money import round_half_away
from .exceptions import (
    ConcurrentBilling,
    DuplicateInvoiceNumber,
    DuplicateWorkType,
    EntryAlreadyBilled,
    InvalidExpense,
    InvalidStatusTransition,
    InvoiceNotPayable,
    OverApplication,
    UnknownClient,
    UnknownExpense,
    UnknownInvoice,
    UnknownInvoiceLine,
    UnknownPayment,
    UnknownTimeEntry,
    UnknownWorkType,
)

logger = get_logger(__name__)

PAYABLE_STATUSES = (
    schemas.InvoiceStatus.SENT.value,
    schemas.InvoiceStatus.PARTIALLY_PAID.value,
    schemas.InvoiceStatus.PAID.value,
)

# === CLIENT OPERATIONS ===

async def create_client(db: AsyncSession, client_data: schemas.ClientCreate) -> models.Client:
    db_client = models.Client(**client_data.model_dump(mode="json"))
    db.add(db_client)
    await db.commit()
    await db.refresh(db_client)
    return db_client

async def get_client(db: AsyncSession, client_id: int) -> models.Client:
    """Get client by ID, raising UnknownClient when it does not exist"""
    client = await db.get(models.Client, client_id)
    if client is None:
        raise UnknownClient(client_id)
    return client

async def list_clients(db: AsyncSession) -> List[models.Client]:
    result = await db.execute(
        select(models.Client)
        .order_by(models.Client.name, models.Client.id)
        .execution_options(populate_existing=True)
    )
    return result.scalars().all()

async def update_client(db: AsyncSession, client_id: int, client_update: schemas.ClientUpdate) -> models.Client:
    """Update client settings; existing invoices keep their snapshot"""
    client = await get_client(db, client_id)

    update_data = client_update.model_dump(exclude_unset=True, mode="json")
    if update_data.get("discount_percent", 0) is None:
        update_data["discount_percent"] = 0
    for field, value in update_data.items():
        setattr(client, field, value)

    await db.commit()
    await db.refresh(client)
    return client

# === WORK TYPE OPERATIONS ===

async def create_work_type(db: AsyncSession, work_type_data: schemas.WorkTypeCreate) -> models.WorkType:
    existing = await db.execute(
        select(models.WorkType.id).where(models.WorkType.code == work_type_data.code)
    )
    if existing.scalar_one_or_none() is not None:
        raise DuplicateWorkType(work_type_data.code)

    db_work_type = models.WorkType(**work_type_data.model_dump())
    db.add(db_work_type)
    await db.commit()
    await db.refresh(db_work_type)
    return db_work_type

async def get_work_type(db: AsyncSession, work_type_id: int) -> models.WorkType:
    work_type = await db.get(models.WorkType, work_type_id)
    if work_type is None:
        raise UnknownWorkType(work_type_id)
    return work_type

async def list_work_types(db: AsyncSession) -> List[models.WorkType]:
    result = await db.execute(select(models.WorkType).order_by(models.WorkType.code))
    return result.scalars().all()

# === TIME ENTRY OPERATIONS ===

def _clean_project(project_name: Optional[str]) -> Optional[str]:
    project_name = (project_name or "").strip()
    return project_name or None

async def create_time_entry(db: AsyncSession, entry_data: schemas.TimeEntryCreate) -> models.TimeEntry:
    await get_client(db, entry_data.client_id)
    await get_work_type(db, entry_data.work_type_id)

    db_entry = models.TimeEntry(
        client_id=entry_data.client_id,
        work_type_id=entry_data.work_type_id,
        project_name=_clean_project(entry_data.project_name),
        minutes_spent=entry_data.minutes_spent,
        work_date=entry_data.work_date,
        detail=entry_data.detail
    )
    db.add(db_entry)
    await db.commit()
    return await get_time_entry(db, db_entry.id)

async def get_time_entry(db: AsyncSession, entry_id: int) -> models.TimeEntry:
    result = await db.execute(
        select(models.TimeEntry)
        .where(models.TimeEntry.id == entry_id)
        .execution_options(populate_existing=True)
    )
    entry = result.scalar_one_or_none()
    if entry is None:
        raise UnknownTimeEntry(entry_id)
    return entry

async def list_time_entries(
    db: AsyncSession,
    client_id: Optional[int] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    is_invoiced: Optional[bool] = None
) -> List[models.TimeEntry]:
    """List time entries, newest first"""
    query = select(models.TimeEntry)

    if client_id is not None:
        query = query.where(models.TimeEntry.client_id == client_id)
    if date_from:
        query = query.where(models.TimeEntry.work_date >= date_from)
    if date_to:
        query = query.where(models.TimeEntry.work_date <= date_to)
    if is_invoiced is True:
        query = query.where(models.TimeEntry.invoice_id.isnot(None))
    elif is_invoiced is False:
        query = query.where(models.TimeEntry.invoice_id.is_(None))

    query = query.order_by(desc(models.TimeEntry.work_date), desc(models.TimeEntry.id))
    result = await db.execute(query.execution_options(populate_existing=True))
    return result.scalars().all()

async def list_unbilled_time_entries(
    db: AsyncSession,
    client_id: int,
    start_date: date,
    end_date: date
) -> List[models.TimeEntry]:
    """Unbilled entries of a client in [start_date, end_date], in grouping order"""
    result = await db.execute(
        select(models.TimeEntry)
        .where(and_(
            models.TimeEntry.client_id == client_id,
            models.TimeEntry.work_date >= start_date,
            models.TimeEntry.work_date <= end_date,
            models.TimeEntry.invoice_id.is_(None)
        ))
        .order_by(
            models.TimeEntry.work_type_id,
            models.TimeEntry.project_name,
            models.TimeEntry.work_date,
            models.TimeEntry.id
        )
        .execution_options(populate_existing=True)
    )
    return result.scalars().all()

async def update_time_entry(
    db: AsyncSession,
    entry_id: int,
    entry_data: schemas.TimeEntryCreate
) -> models.TimeEntry:
    """Replace an unbilled entry; billed entries are frozen"""
    entry = await get_time_entry(db, entry_id)
    if entry.invoice_id is not None:
        raise EntryAlreadyBilled(entry.id, entry.invoice_id)
    await get_client(db, entry_data.client_id)
    await get_work_type(db, entry_data.work_type_id)

    entry.client_id = entry_data.client_id
    entry.work_type_id = entry_data.work_type_id
    entry.project_name = _clean_project(entry_data.project_name)
    entry.minutes_spent = entry_data.minutes_spent
    entry.work_date = entry_data.work_date
    entry.detail = entry_data.detail

    await db.commit()
    return await get_time_entry(db, entry_id)

async def delete_time_entry(db: AsyncSession, entry_id: int) -> None:
    entry = await get_time_entry(db, entry_id)
    if entry.invoice_id is not None:
        raise EntryAlreadyBilled(entry.id, entry.invoice_id)
    await db.delete(entry)
    await db.commit()

# === INVOICE OPERATIONS ===

async def next_invoice_number(db: AsyncSession) -> int:
    """Highest invoice number plus one, or the configured starting number"""
    result = await db.execute(select(func.max(models.Invoice.invoice_number)))
    last_number = result.scalar()
    if last_number is None:
        return settings.INVOICE_NUMBER_START
    return last_number + 1

async def get_invoice(db: AsyncSession, invoice_id: int) -> models.Invoice:
    """Get invoice with lines, client, billed entries and applications"""
    result = await db.execute(
        select(models.Invoice)
        .where(models.Invoice.id == invoice_id)
        .execution_options(populate_existing=True)
    )
    invoice = result.scalar_one_or_none()
    if invoice is None:
        raise UnknownInvoice(invoice_id)
    return invoice

async def list_invoices(
    db: AsyncSession,
    client_id: Optional[int] = None,
    status: Optional[schemas.InvoiceStatus] = None
) -> List[models.Invoice]:
    query = select(models.Invoice)

    if client_id is not None:
        query = query.where(models.Invoice.client_id == client_id)
    if status is not None:
        query = query.where(models.Invoice.status == status.value)

    query = query.order_by(models.Invoice.invoice_date, models.Invoice.invoice_number)
    result = await db.execute(query.execution_options(populate_existing=True))
    return result.scalars().all()

async def create_invoice_and_mark_entries_billed(
    db: AsyncSession,
    draft: schemas.InvoiceDraft
) -> models.Invoice:
    """Insert the invoice with its lines and mark every listed entry billed.

    Runs as one unit of work: either the invoice exists and all its entries
    point at it, or nothing changed.
    """
    try:
        existing = await db.execute(
            select(models.Invoice.id).where(models.Invoice.invoice_number == draft.invoice_number)
        )
        if existing.scalar_one_or_none() is not None:
            raise DuplicateInvoiceNumber(draft.invoice_number)

        db_invoice = models.Invoice(
            invoice_number=draft.invoice_number,
            client_id=draft.client_id,
            invoice_date=draft.invoice_date,
            due_date=draft.due_date,
            status=draft.status.value,
            discount_percent=draft.discount_percent,
            subtotal_cents=draft.subtotal_cents,
            discount_cents=draft.discount_cents,
            total_cents=draft.total_cents,
            lines=[models.InvoiceLine(**line.model_dump()) for line in draft.lines]
        )
        db.add(db_invoice)
        await db.flush()  # Get the ID

        entry_ids = list(dict.fromkeys(draft.time_entry_ids))
        if entry_ids:
            result = await db.execute(
                select(models.TimeEntry.id, models.TimeEntry.invoice_id)
                .where(models.TimeEntry.id.in_(entry_ids))
            )
            billed_on = {row.id: row.invoice_id for row in result}
            for entry_id in entry_ids:
                if entry_id not in billed_on:
                    raise UnknownTimeEntry(entry_id)
                if billed_on[entry_id] is not None:
                    raise EntryAlreadyBilled(entry_id, billed_on[entry_id])

            # Guarded update: a concurrent commit that billed any entry first wins
            marked = await db.execute(
                update(models.TimeEntry)
                .where(and_(
                    models.TimeEntry.id.in_(entry_ids),
                    models.TimeEntry.invoice_id.is_(None)
                ))
                .values(invoice_id=db_invoice.id, invoice_date=draft.invoice_date)
                .execution_options(synchronize_session=False)
            )
            if marked.rowcount != len(entry_ids):
                raise ConcurrentBilling(draft.invoice_number, len(entry_ids) - marked.rowcount, len(entry_ids))

        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        logger.warning(f"Invoice {draft.invoice_number} rejected by the database: {e.orig}")
        raise DuplicateInvoiceNumber(draft.invoice_number) from e
    except Exception:
        await db.rollback()
        raise

    logger.info(
        f"Created invoice {draft.invoice_number} for client {draft.client_id}: "
        f"{len(draft.lines)} lines, {len(draft.time_entry_ids)} entries billed, total {draft.total_cents}"
    )
    return await get_invoice(db, db_invoice.id)

# Allowed manual status changes; payment statuses are derived, never set by hand
STATUS_TRANSITIONS = {
    schemas.InvoiceStatus.DRAFT: {schemas.InvoiceStatus.SENT, schemas.InvoiceStatus.VOIDED},
    schemas.InvoiceStatus.SENT: {schemas.InvoiceStatus.DRAFT, schemas.InvoiceStatus.VOIDED},
    schemas.InvoiceStatus.PARTIALLY_PAID: {schemas.InvoiceStatus.VOIDED},
    schemas.InvoiceStatus.PAID: {schemas.InvoiceStatus.VOIDED},
    schemas.InvoiceStatus.VOIDED: set(),
}

async def update_invoice_status(
    db: AsyncSession,
    invoice_id: int,
    new_status: schemas.InvoiceStatus
) -> models.Invoice:
    invoice = await get_invoice(db, invoice_id)
    current = schemas.InvoiceStatus(invoice.status)

    if current == new_status:
        return invoice
    if new_status not in STATUS_TRANSITIONS[current]:
        raise InvalidStatusTransition(current.value, new_status.value)

    invoice.status = new_status.value
    await db.commit()
    logger.info(f"Invoice {invoice.invoice_number} status changed from {current.value} to {new_status.value}")
    return await get_invoice(db, invoice_id)

async def update_line_description(
    db: AsyncSession,
    invoice_id: int,
    line_id: int,
    description: Optional[str]
) -> models.Invoice:
    """Edit a line's free-text description; amounts are untouched"""
    await get_invoice(db, invoice_id)
    result = await db.execute(
        select(models.InvoiceLine).where(and_(
            models.InvoiceLine.id == line_id,
            models.InvoiceLine.invoice_id == invoice_id
        ))
    )
    line = result.scalar_one_or_none()
    if line is None:
        raise UnknownInvoiceLine(line_id)

    line.description = (description or "").strip() or None
    await db.commit()
    return await get_invoice(db, invoice_id)

async def delete_invoice(db: AsyncSession, invoice_id: int) -> None:
    """Delete an invoice and its lines, releasing its time entries for re-billing"""
    invoice = await get_invoice(db, invoice_id)
    try:
        released = await db.execute(
            update(models.TimeEntry)
            .where(models.TimeEntry.invoice_id == invoice_id)
            .values(invoice_id=None, invoice_date=None)
            .execution_options(synchronize_session=False)
        )
        for entry in invoice.time_entries:
            entry.invoice_id = None
            entry.invoice_date = None
        await db.delete(invoice)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.info(f"Deleted invoice {invoice.invoice_number}, released {released.rowcount} time entries")

# === PAYMENT OPERATIONS ===

def derive_payment_status(total_cents: int, applied_cents: int) -> schemas.InvoiceStatus:
    if applied_cents >= total_cents and total_cents > 0:
        return schemas.InvoiceStatus.PAID
    if applied_cents > 0:
        return schemas.InvoiceStatus.PARTIALLY_PAID
    return schemas.InvoiceStatus.SENT

async def _applied_to_invoice(db: AsyncSession, invoice_id: int) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(models.PaymentApplication.amount_cents), 0))
        .where(models.PaymentApplication.invoice_id == invoice_id)
    )
    return result.scalar()

async def update_invoice_status_from_payments(db: AsyncSession, invoice_ids: Iterable[int]) -> None:
    """Re-derive sent / partially_paid / paid from applied amounts (caller commits)"""
    for invoice_id in set(invoice_ids):
        invoice = await db.get(models.Invoice, invoice_id)
        if invoice is None or invoice.status not in PAYABLE_STATUSES:
            continue
        applied = await _applied_to_invoice(db, invoice_id)
        invoice.status = derive_payment_status(invoice.total_cents, applied).value

async def create_payment(db: AsyncSession, payment_data: schemas.PaymentCreate) -> models.Payment:
    """Record a payment and its applications, refusing any over-application"""
    applied_total = sum(application.amount_cents for application in payment_data.applications)
    if applied_total > payment_data.amount_cents:
        raise OverApplication(
            f"Applications total {applied_total} exceeds payment amount {payment_data.amount_cents}"
        )

    requested: Dict[int, int] = {}
    for application in payment_data.applications:
        requested[application.invoice_id] = requested.get(application.invoice_id, 0) + application.amount_cents

    try:
        for invoice_id, amount in requested.items():
            invoice = await db.get(models.Invoice, invoice_id)
            if invoice is None:
                raise UnknownInvoice(invoice_id)
            if invoice.status not in PAYABLE_STATUSES:
                raise InvoiceNotPayable(invoice.invoice_number, invoice.status)
            already_applied = await _applied_to_invoice(db, invoice_id)
            if already_applied + amount > invoice.total_cents:
                raise OverApplication(
                    f"Invoice {invoice.invoice_number} would receive {already_applied + amount} "
                    f"against a total of {invoice.total_cents}"
                )

        db_payment = models.Payment(
            payment_date=payment_data.payment_date,
            amount_cents=payment_data.amount_cents,
            note=payment_data.note,
            applications=[
                models.PaymentApplication(invoice_id=application.invoice_id, amount_cents=application.amount_cents)
                for application in payment_data.applications
            ]
        )
        db.add(db_payment)
        await db.flush()

        await update_invoice_status_from_payments(db, requested.keys())
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        f"Recorded payment {db_payment.id} of {payment_data.amount_cents} "
        f"applied to {len(requested)} invoices"
    )
    return await get_payment(db, db_payment.id)

async def get_payment(db: AsyncSession, payment_id: int) -> models.Payment:
    result = await db.execute(
        select(models.Payment)
        .where(models.Payment.id == payment_id)
        .execution_options(populate_existing=True)
    )
    payment = result.scalar_one_or_none()
    if payment is None:
        raise UnknownPayment(payment_id)
    return payment

async def list_payments(db: AsyncSession, client_id: Optional[int] = None) -> List[models.Payment]:
    """Payments with their applications; filtered to those touching a client's invoices"""
    query = select(models.Payment)
    if client_id is not None:
        query = query.where(
            models.Payment.id.in_(
                select(models.PaymentApplication.payment_id)
                .join(models.Invoice, models.Invoice.id == models.PaymentApplication.invoice_id)
                .where(models.Invoice.client_id == client_id)
            )
        )
    query = query.order_by(models.Payment.payment_date, models.Payment.id)
    result = await db.execute(query.execution_options(populate_existing=True))
    return result.scalars().all()

async def delete_payment(db: AsyncSession, payment_id: int) -> None:
    payment = await get_payment(db, payment_id)
    invoice_ids = [application.invoice_id for application in payment.applications]
    try:
        await db.delete(payment)
        await db.flush()
        await update_invoice_status_from_payments(db, invoice_ids)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.info(f"Deleted payment {payment_id}, re-derived status of {len(set(invoice_ids))} invoices")

# === EXPENSE OPERATIONS ===

async def create_expense(db: AsyncSession, expense_data: schemas.ExpenseCreate) -> models.Expense:
    db_expense = models.Expense(**expense_data.model_dump())
    db.add(db_expense)
    await db.commit()
    await db.refresh(db_expense)
    return db_expense

async def get_expense(db: AsyncSession, expense_id: int) -> models.Expense:
    expense = await db.get(models.Expense, expense_id)
    if expense is None:
        raise UnknownExpense(expense_id)
    return expense

async def list_expenses(
    db: AsyncSession,
    filters: Optional[schemas.ExpenseFilters] = None
) -> List[models.Expense]:
    query = select(models.Expense)

    if filters:
        if filters.vendor:
            query = query.where(models.Expense.vendor.ilike(f"%{filters.vendor}%"))
        if filters.expense_date_from:
            query = query.where(models.Expense.expense_date >= filters.expense_date_from)
        if filters.expense_date_to:
            query = query.where(models.Expense.expense_date <= filters.expense_date_to)
        if filters.is_refund is not None:
            query = query.where(models.Expense.is_refund == filters.is_refund)

    query = query.order_by(desc(models.Expense.expense_date), desc(models.Expense.id))
    result = await db.execute(query)
    return result.scalars().all()

async def delete_expense(db: AsyncSession, expense_id: int) -> None:
    expense = await get_expense(db, expense_id)
    await db.delete(expense)
    await db.commit()

async def update_expense(db: AsyncSession, expense_id: int, expense_update: schemas.ExpenseUpdate) -> models.Expense:
    """Partial update; the sign rule is checked against the merged record"""
    expense = await get_expense(db, expense_id)
    update_data = expense_update.model_dump(exclude_unset=True)

    is_refund = update_data.get("is_refund", expense.is_refund)
    price_cents = update_data.get("price_cents", expense.price_cents)
    if not is_refund and price_cents < 0:
        raise InvalidExpense("price_cents must be non-negative for expenses")

    for field, value in update_data.items():
        setattr(expense, field, value)

    await db.commit()
    await db.refresh(expense)
    return expense

async def get_expense_summary(
    db: AsyncSession,
    expense_date_from: Optional[date] = None,
    expense_date_to: Optional[date] = None
) -> schemas.ExpenseSummary:
    """Counts and totals of expenses and refunds; refunds always reduce the net"""
    conditions = []
    if expense_date_from:
        conditions.append(models.Expense.expense_date >= expense_date_from)
    if expense_date_to:
        conditions.append(models.Expense.expense_date <= expense_date_to)

    totals_query = select(
        models.Expense.is_refund,
        func.count(models.Expense.id).label('count'),
        func.sum(func.abs(models.Expense.price_cents * models.Expense.quantity)).label('amount')
    ).group_by(models.Expense.is_refund)
    vendors_query = select(func.count(func.distinct(models.Expense.vendor)))
    if conditions:
        totals_query = totals_query.where(and_(*conditions))
        vendors_query = vendors_query.where(and_(*conditions))

    breakdown = {bool(row.is_refund): row for row in (await db.execute(totals_query)).all()}
    unique_vendors = (await db.execute(vendors_query)).scalar() or 0

    expense_count = breakdown[False].count if False in breakdown else 0
    expense_amount = int(breakdown[False].amount or 0) if False in breakdown else 0
    refund_count = breakdown[True].count if True in breakdown else 0
    refund_amount = int(breakdown[True].amount or 0) if True in breakdown else 0

    return schemas.ExpenseSummary(
        total_expenses=expense_count,
        total_refunds=refund_count,
        total_expenses_amount_cents=expense_amount,
        total_refunds_amount_cents=refund_amount,
        net_amount_cents=expense_amount - refund_amount,
        average_expense_amount_cents=round_half_away(Decimal(expense_amount) / expense_count) if expense_count else 0,
        unique_vendors=unique_vendors
    )
