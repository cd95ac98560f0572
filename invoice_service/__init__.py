"""
Invoice Service

Invoice lifecycle management with derived PDF documents.

Core Components:
- Invoice store (crud.py): transactional CRUD, numbering, listing and statistics
- Invoice calculator: line item tax and totals
- Status rules: explicit changes and the overdue sweep
- PDF consistency manager: keeps each invoice's PDF in step with its data
- Access policy: admin or issuing user
- FastAPI service (main.py) and the invoice-manage CLI (cli.py)
"""

__version__ = "1.0.0"
__description__ = "Invoice lifecycle and PDF consistency service"
