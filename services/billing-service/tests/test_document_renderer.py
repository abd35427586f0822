import sys
from datetime import date

import pytest

from app import schemas
from app.document_renderer import DocumentRenderer
from app.exceptions import RenderFailure
from app.money import NBSP


@pytest.fixture
def renderer():
    return DocumentRenderer()


def build_invoice(**overrides):
    data = {
        "id": 1,
        "invoice_number": 1001,
        "client_id": 1,
        "client_name": "Acme Ltd",
        "client_email": "ap@acme.test",
        "invoice_date": date(2024, 4, 1),
        "due_date": date(2024, 5, 1),
        "status": "sent",
        "discount_percent": 10,
        "subtotal_cents": 20000,
        "discount_cents": 2000,
        "total_cents": 18000,
        "lines": [
            {
                "id": 1, "invoice_id": 1, "work_type_id": 1,
                "work_type_code": "backend", "work_type_description": "Backend development",
                "project_name": None, "total_minutes": 90, "hourly_rate_cents": 10000,
                "discount_cents": 1500, "amount_cents": 13500, "description": None,
            },
            {
                "id": 2, "invoice_id": 1, "work_type_id": 2,
                "work_type_code": "frontend", "work_type_description": None,
                "project_name": "Portal", "total_minutes": 30, "hourly_rate_cents": 10000,
                "discount_cents": 500, "amount_cents": 4500, "description": "Reviewed\ndesigns",
            },
        ],
    }
    data.update(overrides)
    return data


def test_invoice_document_contents(renderer):
    html = renderer.render_invoice(build_invoice())

    assert "INV-1001" in html
    assert "Backend development" in html
    assert "frontend - Portal" in html
    assert "1.50" in html and "0.50" in html
    assert "$100.00" in html
    assert "10%" in html
    assert "$135.00" in html and "$45.00" in html
    assert "Reviewed\ndesigns" in html

    # Subtotal, Discount, Total in that order
    subtotal = html.index("Subtotal:")
    discount = html.index("Discount (10%):")
    total = html.index("Total:", discount)
    assert subtotal < discount < total
    assert "-$20.00" in html
    assert "$180.00" in html


def test_document_is_self_contained_and_deterministic(renderer):
    first = renderer.render_invoice(build_invoice())
    second = renderer.render_invoice(build_invoice())

    assert first == second
    assert "<style>" in first
    assert "<script" not in first
    assert "<link" not in first


def test_hostile_project_name_is_escaped(renderer):
    invoice = build_invoice()
    invoice["lines"][0]["project_name"] = "<script>alert(1)</script>"
    invoice["client_name"] = 'Tom & "Jerry\'s"'

    html = renderer.render_invoice(invoice)

    assert "<script>" not in html
    assert "&lt;script&gt;alert(1)&lt;/script&gt;" in html
    assert "Tom &amp; &#34;Jerry&#39;s&#34;" in html


def test_runs_of_spaces_stay_visible(renderer):
    invoice = build_invoice()
    invoice["lines"][0]["description"] = "a   b"

    html = renderer.render_invoice(invoice)

    assert "a " + NBSP + NBSP + "b" in html


def test_runs_of_spaces_in_line_labels_stay_visible(renderer):
    invoice = build_invoice()
    invoice["lines"][1]["project_name"] = "Client  Portal"

    html = renderer.render_invoice(invoice)

    assert "frontend - Client " + NBSP + "Portal" in html
    assert "Client  Portal" not in html


def test_no_discount_row_without_discount(renderer):
    invoice = build_invoice(discount_percent=0, discount_cents=0, subtotal_cents=18000)
    invoice["lines"][0]["discount_cents"] = 0
    invoice["lines"][1]["discount_cents"] = 0

    html = renderer.render_invoice(invoice)

    assert "Discount (" not in html
    assert "0%" in html


def test_line_label_falls_back_to_work(renderer):
    invoice = build_invoice()
    invoice["lines"][0]["work_type_description"] = None
    invoice["lines"][0]["work_type_code"] = None

    html = renderer.render_invoice(invoice)

    assert ">Work<" in html


def test_missing_totals_fail_loudly(renderer):
    invoice = build_invoice()
    del invoice["total_cents"]

    with pytest.raises(RenderFailure):
        renderer.render_invoice(invoice)


def test_inconsistent_totals_fail_loudly(renderer):
    with pytest.raises(RenderFailure):
        renderer.render_invoice(build_invoice(total_cents=19000))


def test_statement_document(renderer, make_client, make_invoice, make_payment):
    from app.statement_reconciler import StatementReconciler

    client = make_client(name="<b>Bold</b> Co")
    statement = StatementReconciler().build(
        client,
        [make_invoice(1, 20000, date(2024, 3, 5))],
        [make_payment(1, date(2024, 3, 20), [(1, 5000)], note="Wire  ref")],
        date(2024, 3, 1),
        date(2024, 3, 31),
        company=schemas.CompanyDetails(name="Studio", email="hello@studio.test"),
    )

    html = renderer.render_statement(statement)

    assert "&lt;b&gt;Bold&lt;/b&gt; Co" in html
    assert "INV-1001" in html and "PAY-1" in html
    assert "Payment on Invoice 1001 - Wire " + NBSP + "ref" in html
    assert "$150.00" in html
    assert "Studio" in html


def test_empty_statement_document(renderer, make_client):
    from app.statement_reconciler import StatementReconciler

    statement = StatementReconciler().build(make_client(), [], [], date(2024, 3, 1), date(2024, 3, 31))

    assert "No transactions during this period" in renderer.render_statement(statement)


def test_render_pdf_delegates_to_weasyprint(renderer, mocker):
    fake_weasyprint = mocker.MagicMock()
    fake_weasyprint.HTML.return_value.write_pdf.return_value = b"%PDF-1.7"
    mocker.patch.dict(sys.modules, {"weasyprint": fake_weasyprint})

    document = renderer.render_invoice(build_invoice())
    pdf = renderer.render_pdf(document)

    assert pdf == b"%PDF-1.7"
    fake_weasyprint.HTML.assert_called_once_with(string=document)
