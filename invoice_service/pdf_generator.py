import jinja2
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional

from . import schemas
from .database import utcnow


class PDFGenerator:
    """Render invoice documents to PDF bytes with a Jinja2 template and WeasyPrint"""

    def __init__(self, template_dir: Optional[Path] = None, company_name: str = "Your Company"):
        self.template_dir = Path(template_dir) if template_dir else Path(__file__).parent / "templates"
        self.company_name = company_name

        # Setup Jinja2 environment
        self.jinja_env = jinja2.Environment(
            loader=jinja2.FileSystemLoader(str(self.template_dir)),
            autoescape=jinja2.select_autoescape(['html', 'xml'])
        )

        # Add custom filters
        self.jinja_env.filters['currency'] = self._format_currency
        self.jinja_env.filters['date'] = self._format_date
        self.jinja_env.filters['percentage'] = self._format_percentage

    def render(self, document: schemas.InvoiceDocument) -> bytes:
        """Render a detached invoice snapshot to PDF bytes.

        Blocking; callers on the event loop run it in a worker thread.
        """
        from weasyprint import HTML, CSS

        html_doc = HTML(string=self.render_html(document), base_url=str(self.template_dir))
        return html_doc.write_pdf(stylesheets=[CSS(string=self._get_default_css())])

    def render_html(self, document: schemas.InvoiceDocument) -> str:
        template = self.jinja_env.get_template("invoice.html")
        return template.render(**self._prepare_template_context(document))

    def _prepare_template_context(self, document: schemas.InvoiceDocument) -> Dict[str, Any]:
        """Prepare context data for template rendering"""
        subtotal = sum((item.unit_price * item.quantity for item in document.items), Decimal("0.00"))
        tax_total = sum((item.tax_amount for item in document.items), Decimal("0.00"))

        return {
            "invoice": document,
            "company": {"name": self.company_name},
            "subtotal": subtotal,
            "tax_total": tax_total,
            "is_overdue": document.status == schemas.InvoiceStatus.OVERDUE,
            "generated_at": utcnow(),
        }

    def _get_default_css(self) -> str:
        """Get default CSS styling for invoice PDFs"""
        return """
        @page {
            size: A4;
            margin: 2cm;
            @bottom-right {
                content: "Page " counter(page) " of " counter(pages);
                font-size: 10pt;
                color: #666;
            }
        }

        body {
            font-family: 'Helvetica', Arial, sans-serif;
            font-size: 11pt;
            line-height: 1.4;
            color: #333;
        }

        .company-name {
            font-size: 20pt;
            font-weight: bold;
            color: #2c3e50;
            margin-bottom: 10px;
        }

        .invoice-title {
            font-size: 28pt;
            font-weight: bold;
            color: #e74c3c;
            margin-bottom: 20px;
        }

        .invoice-table {
            width: 100%;
            border-collapse: collapse;
            margin-bottom: 30px;
        }

        .invoice-table th {
            background-color: #34495e;
            color: white;
            padding: 12px 8px;
            text-align: left;
        }

        .invoice-table td {
            padding: 10px 8px;
            border-bottom: 1px solid #ecf0f1;
        }

        .text-right {
            text-align: right;
        }

        .totals-table {
            width: 300px;
            margin-left: auto;
            margin-bottom: 30px;
        }

        .total-row {
            background-color: #34495e;
            color: white;
            font-weight: bold;
        }

        .overdue-notice {
            background-color: #fff5f5;
            border: 2px solid #e74c3c;
            padding: 15px;
            margin-bottom: 20px;
        }

        .footer {
            margin-top: 40px;
            padding-top: 20px;
            border-top: 2px solid #34495e;
            font-size: 9pt;
            color: #666;
        }
        """

    def _format_currency(self, value: Decimal) -> str:
        """Format decimal as currency"""
        return f"${Decimal(str(value)):,.2f}"

    def _format_date(self, value, format_string: str = "%d %B %Y") -> str:
        """Format date"""
        if isinstance(value, str):
            value = datetime.fromisoformat(value.replace('Z', '+00:00'))
        return value.strftime(format_string)

    def _format_percentage(self, value: Decimal) -> str:
        """Format decimal as percentage"""
        return f"{Decimal(str(value)):.2f}%"
