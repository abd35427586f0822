from sqlalchemy import Column, String, Date, DateTime, Float, Integer, Boolean, Text, ForeignKey
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from .database import Base


class Client(Base):
    """A customer billed by the hour"""
    __tablename__ = "clients"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    email = Column(String(200), nullable=True)
    type = Column(String(20), nullable=False, default="company")  # company, individual

    # Billing settings (current values; invoices keep their own snapshot)
    hourly_rate_cents = Column(Integer, nullable=False, default=0)
    discount_percent = Column(Float, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class WorkType(Base):
    __tablename__ = "work_types"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(50), unique=True, nullable=False, index=True)
    description = Column(String(200), nullable=False)


class TimeEntry(Base):
    """Minutes worked for a client on a day; invoice_id stays null until billed"""
    __tablename__ = "time_entries"

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)
    work_type_id = Column(Integer, ForeignKey("work_types.id"), nullable=False)
    project_name = Column(String(200), nullable=True)
    minutes_spent = Column(Integer, nullable=False, default=0)
    work_date = Column(Date, nullable=False, index=True)
    detail = Column(Text, nullable=True)

    # Billing state
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=True, index=True)
    invoice_date = Column(Date, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    work_type = relationship("WorkType", lazy="selectin")
    invoice = relationship("Invoice", back_populates="time_entries")

    @property
    def work_type_code(self):
        return self.work_type.code if self.work_type else None

    @property
    def work_type_description(self):
        return self.work_type.description if self.work_type else None


class Invoice(Base):
    """Invoice header; totals are stored as committed and never recomputed"""
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    invoice_number = Column(Integer, unique=True, nullable=False, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)

    invoice_date = Column(Date, nullable=False, index=True)
    due_date = Column(Date, nullable=False)
    status = Column(String(20), nullable=False, default="draft")  # draft, sent, partially_paid, paid, voided

    # Financial Information
    discount_percent = Column(Float, nullable=False, default=0)
    subtotal_cents = Column(Integer, nullable=False, default=0)
    discount_cents = Column(Integer, nullable=False, default=0)
    total_cents = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    client = relationship("Client", lazy="selectin")
    lines = relationship(
        "InvoiceLine",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLine.id",
        lazy="selectin"
    )
    time_entries = relationship("TimeEntry", back_populates="invoice", lazy="selectin")
    applications = relationship(
        "PaymentApplication",
        back_populates="invoice",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    @property
    def client_name(self):
        return self.client.name if self.client else None

    @property
    def client_email(self):
        return self.client.email if self.client else None

    @property
    def service_start_date(self):
        dates = [entry.work_date for entry in self.time_entries]
        return min(dates) if dates else None

    @property
    def service_end_date(self):
        dates = [entry.work_date for entry in self.time_entries]
        return max(dates) if dates else None

    @property
    def applied_cents(self):
        return sum(application.amount_cents for application in self.applications)


class InvoiceLine(Base):
    """One (work type, project) group of an invoice"""
    __tablename__ = "invoice_lines"

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    work_type_id = Column(Integer, ForeignKey("work_types.id"), nullable=False)
    project_name = Column(String(200), nullable=True)
    total_minutes = Column(Integer, nullable=False, default=0)
    hourly_rate_cents = Column(Integer, nullable=False)
    discount_cents = Column(Integer, nullable=False, default=0)
    amount_cents = Column(Integer, nullable=False)
    description = Column(Text, nullable=True)

    # Relationship
    invoice = relationship("Invoice", back_populates="lines")
    work_type = relationship("WorkType", lazy="selectin")

    @property
    def work_type_code(self):
        return self.work_type.code if self.work_type else None

    @property
    def work_type_description(self):
        return self.work_type.description if self.work_type else None


class Payment(Base):
    """Money received, split over invoices by its applications"""
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    payment_date = Column(Date, nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False)
    note = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    applications = relationship(
        "PaymentApplication",
        back_populates="payment",
        cascade="all, delete-orphan",
        order_by="PaymentApplication.id",
        lazy="selectin"
    )


class PaymentApplication(Base):
    __tablename__ = "payment_applications"

    id = Column(Integer, primary_key=True, index=True)
    payment_id = Column(Integer, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False)

    payment = relationship("Payment", back_populates="applications")
    invoice = relationship("Invoice", back_populates="applications", lazy="selectin")

    @property
    def invoice_number(self):
        return self.invoice.invoice_number if self.invoice else None

    @property
    def client_id(self):
        return self.invoice.client_id if self.invoice else None


class Expense(Base):
    __tablename__ = "expenses"

    id = Column(Integer, primary_key=True, index=True)
    vendor = Column(String(200), nullable=False, index=True)
    item = Column(String(500), nullable=False)
    price_cents = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    expense_date = Column(Date, nullable=False, index=True)
    is_refund = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
