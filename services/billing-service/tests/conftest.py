"""
Test configuration for Billing Service tests
"""

import os
import sys
from datetime import date

import pytest

# Test environment variables
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["AUTH_SECRET_KEY"] = "a_very_secret_key_that_should_be_in_an_env_var"

# Adjust path to import app and other modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from app import schemas  # noqa: E402


@pytest.fixture
def make_client():
    def _make(client_id=1, hourly_rate_cents=10000, discount_percent=10, **overrides):
        data = {
            "id": client_id,
            "name": f"Client {client_id}",
            "email": f"billing{client_id}@example.com",
            "hourly_rate_cents": hourly_rate_cents,
            "discount_percent": discount_percent,
        }
        data.update(overrides)
        return schemas.Client(**data)
    return _make


@pytest.fixture
def make_entry():
    counter = {"id": 0}

    def _make(minutes, work_date=date(2024, 3, 10), work_type_id=1, client_id=1, **overrides):
        counter["id"] += 1
        data = {
            "id": counter["id"],
            "client_id": client_id,
            "work_type_id": work_type_id,
            "work_type_code": {1: "backend", 2: "frontend"}.get(work_type_id, f"type{work_type_id}"),
            "work_type_description": {1: "Backend work", 2: "Frontend work"}.get(work_type_id),
            "minutes_spent": minutes,
            "work_date": work_date,
        }
        data.update(overrides)
        return schemas.TimeEntry(**data)
    return _make


@pytest.fixture
def make_invoice():
    def _make(invoice_id, total_cents, invoice_date, status=schemas.InvoiceStatus.SENT, client_id=1, **overrides):
        data = {
            "id": invoice_id,
            "invoice_number": 1000 + invoice_id,
            "client_id": client_id,
            "invoice_date": invoice_date,
            "due_date": overrides.pop("due_date", invoice_date),
            "status": status,
            "subtotal_cents": total_cents,
            "discount_cents": 0,
            "total_cents": total_cents,
        }
        data.update(overrides)
        return schemas.Invoice(**data)
    return _make


@pytest.fixture
def make_payment():
    counter = {"application_id": 0}

    def _make(payment_id, payment_date, applications, note=None):
        """``applications`` is a list of ``(invoice_id, amount_cents)``"""
        rows = []
        for invoice_id, amount_cents in applications:
            counter["application_id"] += 1
            rows.append(schemas.PaymentApplication(
                id=counter["application_id"],
                payment_id=payment_id,
                invoice_id=invoice_id,
                amount_cents=amount_cents,
            ))
        return schemas.Payment(
            id=payment_id,
            payment_date=payment_date,
            amount_cents=sum(amount for _, amount in applications),
            note=note,
            applications=rows,
        )
    return _make
