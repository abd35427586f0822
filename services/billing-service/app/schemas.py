from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Dict
from datetime import date
from enum import Enum

from .money import parse_duration


class ClientType(str, Enum):
    COMPANY = "company"
    INDIVIDUAL = "individual"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    VOIDED = "voided"


class TransactionType(str, Enum):
    INVOICE = "invoice"
    PAYMENT = "payment"


class AccountingBasis(str, Enum):
    CASH = "cash"
    ACCRUAL = "accrual"
    TIME = "time"


# === CLIENT SCHEMAS ===
class ClientBase(BaseModel):
    name: str = Field(..., max_length=200, description="Client name")
    email: Optional[str] = Field(None, max_length=200)
    type: ClientType = Field(default=ClientType.COMPANY)
    hourly_rate_cents: int = Field(default=0, ge=0, description="Hourly rate in cents")
    discount_percent: float = Field(default=0, ge=0, le=100, description="Discount percentage, may be fractional")

    @field_validator("discount_percent", mode="before")
    @classmethod
    def default_discount(cls, v):
        return 0 if v is None else v


class ClientCreate(ClientBase):
    pass


class ClientUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=200)
    email: Optional[str] = Field(None, max_length=200)
    type: Optional[ClientType] = None
    hourly_rate_cents: Optional[int] = Field(None, ge=0)
    discount_percent: Optional[float] = Field(None, ge=0, le=100)

    @model_validator(mode="after")
    def reject_cleared_required_fields(self):
        # email may be cleared and discount_percent falls back to 0; the rest must keep a value
        cleared = [
            field for field in ("name", "type", "hourly_rate_cents")
            if field in self.model_fields_set and getattr(self, field) is None
        ]
        if cleared:
            raise ValueError(f"{', '.join(cleared)} cannot be null")
        return self


class Client(ClientBase):
    id: int

    class Config:
        from_attributes = True


# === WORK TYPE SCHEMAS ===
class WorkTypeBase(BaseModel):
    code: str = Field(..., min_length=1, max_length=50, description="Unique lowercase identifier")
    description: str = Field(..., max_length=200)

    @field_validator("code")
    @classmethod
    def normalise_code(cls, v: str) -> str:
        code = v.strip().lower()
        if not code:
            raise ValueError("code must not be blank")
        return code


class WorkTypeCreate(WorkTypeBase):
    pass


class WorkType(WorkTypeBase):
    id: int

    class Config:
        from_attributes = True


# === TIME ENTRY SCHEMAS ===
class TimeEntryBase(BaseModel):
    client_id: int
    work_type_id: int
    project_name: Optional[str] = Field(None, max_length=200)
    minutes_spent: int = Field(..., ge=0)
    work_date: date
    detail: Optional[str] = Field(None, max_length=5000, description="Free-text notes compiled into invoice line descriptions")


class TimeEntryCreate(TimeEntryBase):
    minutes_spent: Optional[int] = Field(None, ge=0)
    duration: Optional[str] = Field(None, description="Alternative to minutes_spent: '1:30', '1.5' or '90'")

    @model_validator(mode="after")
    def resolve_minutes(self):
        if self.minutes_spent is None:
            if self.duration is None:
                raise ValueError("minutes_spent or duration is required")
            self.minutes_spent = parse_duration(self.duration)
        return self


class TimeEntry(TimeEntryBase):
    id: int
    invoice_id: Optional[int] = None
    invoice_date: Optional[date] = None
    work_type_code: Optional[str] = None
    work_type_description: Optional[str] = None

    class Config:
        from_attributes = True


# === INVOICE LINE SCHEMAS ===
class InvoiceLineBase(BaseModel):
    work_type_id: int
    project_name: Optional[str] = Field(None, max_length=200)
    total_minutes: int = Field(..., ge=0)
    hourly_rate_cents: int = Field(..., ge=0, description="Rate snapshot at invoice creation")
    discount_cents: int = Field(default=0, ge=0)
    amount_cents: int = Field(..., description="Post-discount amount")
    description: Optional[str] = Field(None, max_length=5000)


class InvoiceLine(InvoiceLineBase):
    id: int
    invoice_id: int
    work_type_code: Optional[str] = None
    work_type_description: Optional[str] = None

    class Config:
        from_attributes = True


class InvoiceLineUpdate(BaseModel):
    description: Optional[str] = Field(None, max_length=5000)


# === INVOICE SCHEMAS ===
class InvoiceBase(BaseModel):
    invoice_number: int = Field(..., gt=0)
    client_id: int
    invoice_date: date
    due_date: date
    status: InvoiceStatus = Field(default=InvoiceStatus.DRAFT)
    discount_percent: float = Field(default=0, ge=0, le=100, description="Client discount snapshot")
    subtotal_cents: int
    discount_cents: int = 0
    total_cents: int

    @field_validator("discount_percent", mode="before")
    @classmethod
    def default_discount(cls, v):
        return 0 if v is None else v


class InvoiceDraft(InvoiceBase):
    """Everything needed to persist a new invoice in one transaction"""
    lines: List[InvoiceLineBase] = Field(default_factory=list)
    time_entry_ids: List[int] = Field(default_factory=list)


class Invoice(InvoiceBase):
    id: int
    lines: List[InvoiceLine] = []
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    service_start_date: Optional[date] = None
    service_end_date: Optional[date] = None
    applied_cents: int = 0

    class Config:
        from_attributes = True


class InvoicePreviewRequest(BaseModel):
    client_id: int
    start_date: date
    end_date: date


class InvoiceFromTimeEntriesRequest(InvoicePreviewRequest):
    invoice_number: Optional[int] = Field(None, gt=0, description="Assigned automatically when omitted")
    invoice_date: date
    due_date: Optional[date] = None


class ManualInvoiceLine(BaseModel):
    work_type_id: int
    project_name: Optional[str] = Field(None, max_length=200)
    total_minutes: int = Field(..., ge=0)
    description: Optional[str] = Field(None, max_length=5000)


class ManualInvoiceCreate(BaseModel):
    client_id: int
    invoice_number: Optional[int] = Field(None, gt=0)
    invoice_date: date
    due_date: Optional[date] = None
    lines: List[ManualInvoiceLine] = Field(..., min_length=1)


class InvoiceStatusUpdate(BaseModel):
    status: InvoiceStatus


class PreviewLine(BaseModel):
    work_type_id: int
    work_type_code: Optional[str] = None
    work_type_description: Optional[str] = None
    project_name: str = ""
    total_minutes: int
    hourly_rate_cents: int
    pre_discount_cents: int
    discount_cents: int
    amount_cents: int
    entry_count: int
    time_entry_ids: List[int]
    description: Optional[str] = None


class InvoicePreview(BaseModel):
    client: Client
    start_date: date
    end_date: date
    lines: List[PreviewLine]
    subtotal_cents: int
    discount_cents: int
    total_cents: int
    total_entries: int
    is_empty: bool = Field(..., description="True when no unbilled entries fall in the range")


# === PAYMENT SCHEMAS ===
class PaymentApplicationBase(BaseModel):
    invoice_id: int
    amount_cents: int = Field(..., gt=0)


class PaymentApplication(PaymentApplicationBase):
    id: int
    payment_id: int
    invoice_number: Optional[int] = None
    client_id: Optional[int] = None

    class Config:
        from_attributes = True


class PaymentBase(BaseModel):
    payment_date: date
    amount_cents: int = Field(..., gt=0)
    note: Optional[str] = Field(None, max_length=1000)


class PaymentCreate(PaymentBase):
    applications: List[PaymentApplicationBase] = Field(default_factory=list)


class Payment(PaymentBase):
    id: int
    applications: List[PaymentApplication] = []
    applied_cents: int = 0
    unapplied_cents: int = 0

    @model_validator(mode="after")
    def derive_applied(self):
        self.applied_cents = sum(application.amount_cents for application in self.applications)
        self.unapplied_cents = self.amount_cents - self.applied_cents
        return self

    class Config:
        from_attributes = True


# === EXPENSE SCHEMAS ===
class ExpenseBase(BaseModel):
    vendor: str = Field(..., max_length=200)
    item: str = Field(..., max_length=500)
    price_cents: int
    quantity: int = Field(default=1, ge=1)
    expense_date: date
    is_refund: bool = False

    @model_validator(mode="after")
    def check_price_sign(self):
        if not self.is_refund and self.price_cents < 0:
            raise ValueError("price_cents must be non-negative for expenses")
        return self


class ExpenseCreate(ExpenseBase):
    pass


class Expense(ExpenseBase):
    id: int
    total_cents: int = 0

    @model_validator(mode="after")
    def derive_total(self):
        self.total_cents = self.price_cents * self.quantity
        return self

    class Config:
        from_attributes = True


class ExpenseUpdate(BaseModel):
    vendor: Optional[str] = Field(None, max_length=200)
    item: Optional[str] = Field(None, max_length=500)
    price_cents: Optional[int] = None
    quantity: Optional[int] = Field(None, ge=1)
    expense_date: Optional[date] = None
    is_refund: Optional[bool] = None

    @model_validator(mode="after")
    def reject_nulls(self):
        cleared = [field for field in self.model_fields_set if getattr(self, field) is None]
        if cleared:
            raise ValueError(f"{', '.join(sorted(cleared))} cannot be null")
        return self


class ExpenseSummary(BaseModel):
    total_expenses: int
    total_refunds: int
    total_expenses_amount_cents: int
    total_refunds_amount_cents: int = Field(..., description="Magnitude of all refunds")
    net_amount_cents: int
    average_expense_amount_cents: int
    unique_vendors: int


class ExpenseFilters(BaseModel):
    vendor: Optional[str] = None
    expense_date_from: Optional[date] = None
    expense_date_to: Optional[date] = None
    is_refund: Optional[bool] = None


# === STATEMENT SCHEMAS ===
class CompanyDetails(BaseModel):
    name: str = ""
    address: str = ""
    email: str = ""


class StatementTransaction(BaseModel):
    type: TransactionType
    date: date
    document_number: str
    description: str
    amount_cents: int = Field(..., description="Invoices positive, payments negative")
    running_balance_cents: int
    invoice_id: int
    invoice_number: int
    payment_id: Optional[int] = None
    payment_note: Optional[str] = None


class Statement(BaseModel):
    client_id: int
    client_name: str
    client_email: Optional[str] = None
    start_date: date
    end_date: date
    beginning_balance_cents: int
    ending_balance_cents: int
    period_invoices_total_cents: int
    period_payments_total_cents: int
    transactions: List[StatementTransaction]
    company: CompanyDetails = Field(default_factory=CompanyDetails)


# === DASHBOARD SCHEMAS ===
class PeriodComparison(BaseModel):
    percent: float
    higher: bool


class PeriodWindow(BaseModel):
    days: int
    start_date: date
    end_date: date
    previous_start_date: date
    previous_end_date: date
    income_cents: int
    previous_income_cents: int
    expenses_cents: int
    previous_expenses_cents: int
    net_cents: int
    previous_net_cents: int
    income_change: Optional[PeriodComparison] = None
    expenses_change: Optional[PeriodComparison] = None
    net_change: Optional[PeriodComparison] = None


class StatusTotals(BaseModel):
    revenue_cents: int = 0
    pending_cents: int = 0
    overdue_cents: int = 0
    draft_cents: int = 0
    paid_this_month_cents: int = 0
    average_invoice_cents: int = 0
    counts: Dict[str, int] = Field(default_factory=dict)


class UninvoicedSummary(BaseModel):
    entry_count: int = 0
    minutes: int = 0
    hours: float = 0
    amount_cents: int = 0


class TopClient(BaseModel):
    client_id: int
    client_name: Optional[str] = None
    invoiced_cents: int


class DashboardSummary(BaseModel):
    as_of: date
    basis: AccountingBasis
    total_clients: int
    status_totals: StatusTotals
    uninvoiced: UninvoicedSummary
    invoiced_last_30_days_cents: int
    invoiced_last_60_days_cents: int
    invoiced_last_90_days_cents: int
    invoiced_all_time_cents: int
    hours_tracked_this_month: float
    payments_received_this_month_cents: int
    average_hours_per_week: float
    expenses_net_cents: int
    top_clients: List[TopClient]
    windows: List[PeriodWindow]
