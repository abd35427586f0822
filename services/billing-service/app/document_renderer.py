import jinja2
from datetime import date
from typing import Any, Mapping, Optional, Union

from pydantic import ValidationError

from . import schemas
from .core.logging import get_logger
from .exceptions import RenderFailure
from .money import format_currency, format_hours, format_percent, preserve_spaces

logger = get_logger(__name__)

InvoiceInput = Union[schemas.Invoice, Mapping[str, Any]]
StatementInput = Union[schemas.Statement, Mapping[str, Any]]


INVOICE_CSS = """
    * { margin: 0; padding: 0; box-sizing: border-box; }
    @page { size: Letter; margin: 1.5cm; }
    body {
        font-family: -apple-system, 'Segoe UI', Roboto, 'Helvetica Neue', Arial, sans-serif;
        line-height: 1.5;
        color: #1a1a1a;
        background: #ffffff;
        padding: 2rem;
    }
    .document { max-width: 900px; margin: 0 auto; padding: 3rem; border: 1px solid #d1d5db; }
    .header { display: flex; justify-content: space-between; align-items: flex-start;
              margin-bottom: 2rem; padding-bottom: 1.25rem; border-bottom: 1px solid #d1d5db; }
    .title { font-size: 1.875rem; font-weight: 600; }
    .company-name { font-weight: 600; }
    .company-address, .company-email { color: #374151; font-size: 0.875rem; white-space: pre-wrap; }
    .meta { text-align: right; }
    .meta p { margin: 0.25rem 0; color: #374151; font-size: 0.875rem; }
    .amount-due { border: 1px solid #1a1a1a; padding: 1.25rem 1.75rem; margin-bottom: 2rem;
                  display: flex; justify-content: space-between; align-items: center; }
    .amount-due-label { font-size: 0.8125rem; text-transform: uppercase; letter-spacing: 0.05em; }
    .amount-due-value { font-size: 2rem; font-weight: 600; font-variant-numeric: tabular-nums; }
    .client-info { margin-bottom: 2rem; padding-bottom: 1rem; border-bottom: 1px solid #e5e7eb; }
    .label { font-size: 0.8125rem; text-transform: uppercase; letter-spacing: 0.05em; color: #374151; }
    .client-email { color: #6b7280; margin-left: 0.5rem; }
    table { width: 100%; border-collapse: collapse; margin-bottom: 2rem; border: 1px solid #d1d5db; }
    thead { background: #f9fafb; border-bottom: 2px solid #1a1a1a; }
    th { padding: 0.75rem 1rem; text-align: left; font-weight: 500; font-size: 0.75rem;
         text-transform: uppercase; letter-spacing: 0.05em; color: #374151; }
    td { padding: 0.875rem 1rem; vertical-align: top; font-size: 0.9375rem;
         white-space: pre-wrap; word-wrap: break-word; overflow-wrap: break-word; }
    tbody tr { border-bottom: 1px solid #e5e7eb; }
    .text-right { text-align: right; font-variant-numeric: tabular-nums; }
    .text-center { text-align: center; font-variant-numeric: tabular-nums; }
    .line-description td { background: #f9fafb; color: #6b7280; font-size: 0.9em; border-top: none; }
    .discount { color: #16a34a; }
    .totals { display: flex; justify-content: flex-end; }
    .totals-table { width: 320px; }
    .totals-table td { padding: 0.625rem 1rem; text-align: right; }
    .total-row td { border-top: 1px solid #1a1a1a; font-weight: 600; }
    .negative { color: #dc2626; }
    .no-transactions { text-align: center; color: #6b7280; font-style: italic; }
    .summary-row { display: flex; justify-content: space-between; font-size: 0.875rem; }
    .summary-row.ending { font-weight: 600; border-top: 1px solid #1a1a1a; padding-top: 0.25rem; }
    @media print { body { padding: 0; } .document { border: none; padding: 0; } }
"""


INVOICE_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>Invoice INV-{{ invoice.invoice_number }}</title>
  <style>{{ css | safe }}</style>
</head>
<body>
  <div class="document invoice">
    <div class="header">
      <div>
        <h1 class="title">INVOICE</h1>
        {% if company.name %}<div class="company-name">{{ company.name }}</div>{% endif %}
        {% if company.address %}<div class="company-address">{{ company.address }}</div>{% endif %}
        {% if company.email %}<div class="company-email">{{ company.email }}</div>{% endif %}
      </div>
      <div class="meta">
        <p><strong>Invoice #:</strong> INV-{{ invoice.invoice_number }}</p>
        <p><strong>Date:</strong> {{ invoice.invoice_date | display_date }}</p>
        <p><strong>Due Date:</strong> {{ invoice.due_date | display_date }}</p>
        {% if invoice.service_start_date and invoice.service_end_date %}
        <p><strong>Service Period:</strong> {{ invoice.service_start_date | display_date }} - {{ invoice.service_end_date | display_date }}</p>
        {% endif %}
      </div>
    </div>

    <div class="amount-due">
      <div class="amount-due-label">Total Amount Due</div>
      <div class="amount-due-value">{{ invoice.total_cents | currency }}</div>
    </div>

    <div class="client-info">
      <span class="label">Bill To:</span>
      <span class="client-name">{{ invoice.client_name or "N/A" }}</span>
      {% if invoice.client_email %}<span class="client-email">({{ invoice.client_email }})</span>{% endif %}
    </div>

    <table class="lines">
      <thead>
        <tr>
          <th>Description</th>
          <th class="text-center">Qty</th>
          <th class="text-right">Rate</th>
          <th class="text-right">Discount</th>
          <th class="text-right">Amount</th>
        </tr>
      </thead>
      <tbody>
        {% for line in invoice.lines %}
        <tr class="line">
          <td class="line-label">{{ line | line_label }}</td>
          <td class="text-center">{{ line.total_minutes | hours }}</td>
          <td class="text-right">{{ line.hourly_rate_cents | currency }}</td>
          <td class="text-right discount">{{ invoice.discount_percent | percent }}</td>
          <td class="text-right">{{ line.amount_cents | currency }}</td>
        </tr>
        {% if line.description and line.description.strip() %}
        <tr class="line-description">
          <td colspan="5"><em>{{ line.description | free_text }}</em></td>
        </tr>
        {% endif %}
        {% endfor %}
      </tbody>
    </table>

    <div class="totals">
      <table class="totals-table">
        <tr class="subtotal-row">
          <td>Subtotal:</td>
          <td>{{ invoice.subtotal_cents | currency }}</td>
        </tr>
        {% if invoice.discount_cents > 0 %}
        <tr class="discount-row">
          <td>Discount ({{ invoice.discount_percent | percent }}):</td>
          <td class="negative">-{{ invoice.discount_cents | currency }}</td>
        </tr>
        {% endif %}
        <tr class="total-row">
          <td>Total:</td>
          <td>{{ invoice.total_cents | currency }}</td>
        </tr>
      </table>
    </div>
  </div>
</body>
</html>
"""


STATEMENT_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>Statement - {{ statement.client_name }} - {{ statement.start_date }} to {{ statement.end_date }}</title>
  <style>{{ css | safe }}</style>
</head>
<body>
  <div class="document statement">
    <div class="header">
      <div class="company-info">
        {% if statement.company.name %}<div class="company-name">{{ statement.company.name }}</div>{% endif %}
        {% if statement.company.address %}<div class="company-address">{{ statement.company.address }}</div>{% endif %}
        {% if statement.company.email %}<div class="company-email">{{ statement.company.email }}</div>{% endif %}
      </div>
      <div class="meta">
        <h2 class="title">STATEMENT</h2>
        <p><strong>Period:</strong> {{ statement.start_date | display_date }} - {{ statement.end_date | display_date }}</p>
      </div>
    </div>

    <div class="client-info">
      <div class="label">Customer</div>
      <div class="client-name">{{ statement.client_name or "N/A" }}</div>
      {% if statement.client_email %}<div class="client-email">{{ statement.client_email }}</div>{% endif %}
    </div>

    <div class="client-info account-summary">
      <div class="label">Account Summary</div>
      <div class="summary-row"><span>Beginning Balance:</span><span>{{ statement.beginning_balance_cents | currency }}</span></div>
      <div class="summary-row"><span>Invoices:</span><span>+ {{ statement.period_invoices_total_cents | currency }}</span></div>
      <div class="summary-row"><span>Payments:</span><span>- {{ statement.period_payments_total_cents | currency }}</span></div>
      <div class="summary-row ending"><span>Ending Balance:</span><span>{{ statement.ending_balance_cents | currency }}</span></div>
    </div>

    <table class="transactions">
      <thead>
        <tr>
          <th>Date</th>
          <th>Type</th>
          <th>Document</th>
          <th>Description</th>
          <th class="text-right">Amount</th>
          <th class="text-right">Balance</th>
        </tr>
      </thead>
      <tbody>
        <tr class="beginning-balance-row">
          <td>{{ statement.start_date | display_date }}</td>
          <td></td>
          <td></td>
          <td>Beginning Balance</td>
          <td class="text-right">-</td>
          <td class="text-right">{{ statement.beginning_balance_cents | currency }}</td>
        </tr>
        {% for transaction in statement.transactions %}
        <tr class="transaction-row {{ transaction.type.value }}-row">
          <td>{{ transaction.date | display_date }}</td>
          <td>{{ "Payment" if transaction.type.value == "payment" else "Invoice" }}</td>
          <td>{{ transaction.document_number }}</td>
          <td>{{ transaction.description | free_text }}</td>
          <td class="text-right{% if transaction.amount_cents < 0 %} negative{% endif %}">{{ transaction.amount_cents | currency }}</td>
          <td class="text-right">{{ transaction.running_balance_cents | currency }}</td>
        </tr>
        {% else %}
        <tr>
          <td colspan="6" class="no-transactions">No transactions during this period</td>
        </tr>
        {% endfor %}
      </tbody>
    </table>

    <div class="totals">
      <table class="totals-table">
        <tr><td>Beginning Balance:</td><td>{{ statement.beginning_balance_cents | currency }}</td></tr>
        <tr><td>Invoices:</td><td>{{ statement.period_invoices_total_cents | currency }}</td></tr>
        <tr><td>Payments:</td><td class="negative">-{{ statement.period_payments_total_cents | currency }}</td></tr>
        <tr class="total-row"><td>Amount Due:</td><td>{{ statement.ending_balance_cents | currency }}</td></tr>
      </table>
    </div>
  </div>
</body>
</html>
"""


class DocumentRenderer:
    """Render invoices and statements into self-contained HTML documents.

    Rendering is a pure function of the record handed in: no clock, no I/O.
    User-supplied text goes through Jinja2 autoescaping, so markup in names,
    projects or descriptions always comes out as text.
    """

    def __init__(self):
        self.jinja_env = jinja2.Environment(
            loader=jinja2.DictLoader({
                "invoice.html": INVOICE_TEMPLATE,
                "statement.html": STATEMENT_TEMPLATE,
            }),
            autoescape=True,
            undefined=jinja2.StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True
        )

        # Add custom filters
        self.jinja_env.filters['currency'] = format_currency
        self.jinja_env.filters['hours'] = format_hours
        self.jinja_env.filters['percent'] = format_percent
        self.jinja_env.filters['display_date'] = self._format_date
        self.jinja_env.filters['free_text'] = self._format_free_text
        self.jinja_env.filters['line_label'] = self.line_label

    def render_invoice(self, invoice: InvoiceInput, company: Optional[schemas.CompanyDetails] = None) -> str:
        """Render an invoice (header, lines, totals) into an HTML document"""
        invoice = self._validate_invoice(invoice)
        template = self.jinja_env.get_template("invoice.html")
        return template.render(
            invoice=invoice,
            company=company or schemas.CompanyDetails(),
            css=INVOICE_CSS
        )

    def render_statement(self, statement: StatementInput) -> str:
        """Render a customer statement into an HTML document"""
        statement = self._validate_statement(statement)
        template = self.jinja_env.get_template("statement.html")
        return template.render(statement=statement, css=INVOICE_CSS)

    def render_pdf(self, document: str) -> bytes:
        """Rasterize a rendered document to PDF bytes with WeasyPrint"""
        from weasyprint import HTML

        return HTML(string=document).write_pdf()

    @staticmethod
    def line_label(line) -> str:
        """Work type description, else code, else 'Work', plus the project name"""
        label = line.work_type_description or line.work_type_code or "Work"
        if line.project_name and line.project_name.strip():
            label = f"{label} - {line.project_name.strip()}"
        return preserve_spaces(label)

    def _validate_invoice(self, invoice: InvoiceInput) -> schemas.Invoice:
        if not isinstance(invoice, schemas.Invoice):
            try:
                invoice = schemas.Invoice.model_validate(invoice)
            except ValidationError as e:
                logger.error(f"Refusing to render incomplete invoice: {e.error_count()} problems")
                raise RenderFailure(f"Invoice is missing required data: {e}") from e

        if invoice.total_cents != invoice.subtotal_cents - invoice.discount_cents:
            raise RenderFailure(
                f"Invoice INV-{invoice.invoice_number} totals are inconsistent: "
                f"{invoice.subtotal_cents} - {invoice.discount_cents} != {invoice.total_cents}"
            )
        if invoice.lines and sum(line.amount_cents for line in invoice.lines) != invoice.total_cents:
            raise RenderFailure(
                f"Invoice INV-{invoice.invoice_number} line amounts do not add up to its total"
            )
        return invoice

    def _validate_statement(self, statement: StatementInput) -> schemas.Statement:
        if isinstance(statement, schemas.Statement):
            return statement
        try:
            return schemas.Statement.model_validate(statement)
        except ValidationError as e:
            raise RenderFailure(f"Statement is missing required data: {e}") from e

    def _format_date(self, value: Optional[date]) -> str:
        if value is None:
            return ""
        return f"{value:%b} {value.day}, {value.year}"

    def _format_free_text(self, value: Optional[str]) -> str:
        """Trim free text and keep runs of spaces visible"""
        if not value:
            return ""
        return preserve_spaces(str(value).strip())
