"""
Poultry Trading ERP Core
"""

__version__ = "1.0.0"
__description__ = "Delivery documents, invoicing and party ledgers for a poultry trading business"

from poultry_erp.main import ErpSession, format_result_json
from poultry_erp.store import EntityStore, FileStorage, MemoryStorage
from poultry_erp.engines.numbering import derive_party_code, next_document_number
from poultry_erp.engines.parser import parse_bulk_text, parse_line_units
from poultry_erp.schemas.output import CommitResult

__all__ = [
    "ErpSession",
    "format_result_json",
    "EntityStore",
    "FileStorage",
    "MemoryStorage",
    "derive_party_code",
    "next_document_number",
    "parse_bulk_text",
    "parse_line_units",
    "CommitResult",
]
