from datetime import date

import pytest

from app import schemas
from app.exceptions import InvalidRange
from app.statement_reconciler import StatementReconciler

START = date(2024, 3, 1)
END = date(2024, 3, 31)


@pytest.fixture
def reconciler():
    return StatementReconciler()


def assert_balance_chain(statement):
    running = statement.beginning_balance_cents
    for transaction in statement.transactions:
        running += transaction.amount_cents
        assert transaction.running_balance_cents == running
    assert statement.ending_balance_cents == running


def test_running_balance_from_beginning_balance(reconciler, make_client, make_invoice, make_payment):
    invoices = [
        make_invoice(1, 50000, date(2024, 2, 10)),
        make_invoice(2, 20000, date(2024, 3, 15)),
    ]
    payments = [make_payment(1, date(2024, 3, 20), [(2, 20000), (1, 10000)])]

    statement = reconciler.build(make_client(), invoices, payments, START, END)

    assert statement.beginning_balance_cents == 50000
    assert [t.running_balance_cents for t in statement.transactions] == [70000, 50000, 40000]
    assert statement.ending_balance_cents == 40000
    assert statement.period_invoices_total_cents == 20000
    assert statement.period_payments_total_cents == 30000
    assert_balance_chain(statement)


def test_invoice_then_payment_scenario(reconciler, make_client, make_invoice, make_payment):
    invoices = [
        make_invoice(1, 80000, date(2024, 1, 5)),
        make_invoice(2, 20000, date(2024, 3, 12)),
        make_invoice(3, 30000, date(2024, 1, 20)),
    ]
    payments = [
        make_payment(1, date(2024, 2, 1), [(1, 30000)]),
        make_payment(2, date(2024, 2, 15), [(3, 30000)]),
        make_payment(3, date(2024, 3, 25), [(1, 30000)]),
    ]

    statement = reconciler.build(make_client(), invoices, payments, START, END)

    assert statement.beginning_balance_cents == 50000
    assert [t.type for t in statement.transactions] == [
        schemas.TransactionType.INVOICE, schemas.TransactionType.PAYMENT,
    ]
    assert [t.running_balance_cents for t in statement.transactions] == [70000, 40000]
    assert statement.ending_balance_cents == 40000


def test_drafts_and_voided_invoices_have_no_effect(reconciler, make_client, make_invoice, make_payment):
    invoices = [
        make_invoice(1, 10000, date(2024, 2, 1), status=schemas.InvoiceStatus.DRAFT),
        make_invoice(2, 20000, date(2024, 3, 2), status=schemas.InvoiceStatus.VOIDED),
        make_invoice(3, 30000, date(2024, 3, 3), status=schemas.InvoiceStatus.PAID),
    ]
    payments = [make_payment(1, date(2024, 3, 4), [(2, 20000), (3, 30000)])]

    statement = reconciler.build(make_client(), invoices, payments, START, END)

    assert statement.beginning_balance_cents == 0
    assert [t.document_number for t in statement.transactions] == ["INV-1003", "PAY-1"]
    assert statement.ending_balance_cents == 0


def test_same_day_invoices_come_before_payments(reconciler, make_client, make_invoice, make_payment):
    same_day = date(2024, 3, 10)
    invoices = [make_invoice(2, 5000, same_day), make_invoice(1, 7000, same_day)]
    payments = [
        make_payment(9, same_day, [(1, 1000)]),
        make_payment(4, same_day, [(2, 2000), (1, 500)]),
    ]

    statement = reconciler.build(make_client(), invoices, payments, START, END)

    assert [t.document_number for t in statement.transactions] == [
        "INV-1001", "INV-1002", "PAY-4", "PAY-4", "PAY-9",
    ]
    assert [t.amount_cents for t in statement.transactions] == [7000, 5000, -2000, -500, -1000]
    assert_balance_chain(statement)


def test_other_clients_are_excluded(reconciler, make_client, make_invoice, make_payment):
    invoices = [make_invoice(1, 5000, date(2024, 3, 5)), make_invoice(2, 9000, date(2024, 3, 5), client_id=2)]
    payments = [make_payment(1, date(2024, 3, 6), [(1, 5000), (2, 9000)])]

    statement = reconciler.build(make_client(), invoices, payments, START, END)

    assert statement.period_invoices_total_cents == 5000
    assert statement.period_payments_total_cents == 5000
    assert statement.ending_balance_cents == 0


def test_payment_descriptions(reconciler, make_client, make_invoice, make_payment):
    invoices = [make_invoice(1, 5000, date(2024, 3, 5))]
    payments = [
        make_payment(1, date(2024, 3, 6), [(1, 1000)], note="  Cheque 42 "),
        make_payment(2, date(2024, 3, 7), [(1, 1000)]),
    ]

    statement = reconciler.build(make_client(), invoices, payments, START, END)

    assert [t.description for t in statement.transactions] == [
        "Invoice 1001",
        "Payment on Invoice 1001 - Cheque 42",
        "Payment on Invoice 1001",
    ]


def test_no_transactions_keeps_beginning_balance(reconciler, make_client, make_invoice):
    statement = reconciler.build(make_client(), [make_invoice(1, 4200, date(2024, 1, 1))], [], START, END)

    assert statement.transactions == []
    assert statement.ending_balance_cents == statement.beginning_balance_cents == 4200


def test_inverted_range_is_rejected(reconciler, make_client):
    with pytest.raises(InvalidRange):
        reconciler.build(make_client(), [], [], END, START)
