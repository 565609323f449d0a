"""
Document Numbering Engine
Builds short, human-readable document numbers without a central counter.

A number is the party code followed by the document date (DDMMYY). The
first document of the day for a party gets the bare number; later ones on
the same day get a letter suffix: a, b, c, ...
"""

import re
from datetime import date
from typing import Dict, Iterable, List, Optional

from poultry_erp.schemas.dataset import Dataset
from poultry_erp.schemas.party import Party
from poultry_erp.utils import calendar_date
from poultry_erp.utils.logging import setup_logging


logger = setup_logging(__name__)

# Lowercase, letters-only names -> fixed codes
DEFAULT_PARTY_CODES: Dict[str, str] = {
    "suguna": "sgn",
    "sagarpoultryfarm": "sgr",
    "krishnachickencenter": "kcc",
    "balajipoultry": "blj",
    "shreeganeshfarm": "sgf",
    "radhakrishnapoultry": "rkp",
}

VOWELS = set("aeiou")
MAX_CODE_LENGTH = 4


def normalize_name(name: str) -> str:
    """Lowercase, letters only."""
    return re.sub(r"[^a-z]", "", name.lower())


def derive_party_code(name: str, mapping: Optional[Dict[str, str]] = None) -> str:
    """
    Derive the short alphabetic code for a party name.

    Rules, in order:
    1. Known names use their mapped code
    2. Several words: first letter of each word (max 4)
    3. One word with at least 3 consonants: its first consonants (max 4)
    4. Otherwise: its first letters (max 4)

    Codes are not guaranteed unique across different names.
    """
    mapping = DEFAULT_PARTY_CODES if mapping is None else mapping
    key = normalize_name(name)
    if not key:
        raise ValueError(f"Cannot derive a party code from {name!r}")

    if key in mapping:
        return mapping[key]

    words = [normalize_name(word) for word in name.split()]
    words = [word for word in words if word]
    if len(words) > 1:
        return "".join(word[0] for word in words)[:MAX_CODE_LENGTH]

    consonants = [c for c in key if c not in VOWELS]
    if len(consonants) >= 3:
        return "".join(consonants[:MAX_CODE_LENGTH])

    return key[:MAX_CODE_LENGTH]


def format_date_code(doc_date: date) -> str:
    """DDMMYY, zero padded."""
    return doc_date.strftime("%d%m%y")


def base_number(party_code: str, doc_date: date) -> str:
    return f"{party_code}{format_date_code(doc_date)}"


def suffix_for(index: int) -> str:
    """1 -> a, 2 -> b, ..., 26 -> z, 27 -> aa."""
    if index < 1:
        raise ValueError("Suffix index starts at 1")

    letters = []
    while index > 0:
        index, remainder = divmod(index - 1, 26)
        letters.append(chr(ord("a") + remainder))
    return "".join(reversed(letters))


def next_document_number(party_code: str, doc_date: date, existing: Iterable[str]) -> str:
    """
    Next free number for a party on a date.

    Args:
        party_code: Code from ``derive_party_code``
        doc_date: Calendar date of the new document
        existing: Numbers already issued to this party on this date

    Returns:
        The base number when nothing exists yet, otherwise the base number
        with the N-th letter for N existing documents. A suffix already in
        use (after a deletion, say) is passed over.
    """
    doc_date = calendar_date(doc_date)
    base = base_number(party_code, doc_date)
    taken = set(existing)
    if not taken:
        return base

    index = len(taken)
    candidate = f"{base}{suffix_for(index)}"
    while candidate in taken:
        index += 1
        candidate = f"{base}{suffix_for(index)}"

    if index > 26:
        logger.warning(f"More than 26 documents for {party_code} on {doc_date.isoformat()}")
    return candidate


def party_code_for(party: Party, mapping: Optional[Dict[str, str]] = None) -> str:
    """The stored code of a party, derived from its name when missing."""
    return party.code or derive_party_code(party.name, mapping)


def number_for_delivery(dataset: Dataset, vendor: Party, doc_date: date) -> str:
    """Number for a new delivery from ``vendor`` dated ``doc_date``."""
    doc_date = calendar_date(doc_date)
    same_day: List[str] = [
        dc.number
        for dc in dataset.delivery_documents
        if dc.vendor_id == vendor.id and calendar_date(dc.date) == doc_date
    ]
    number = next_document_number(party_code_for(vendor), doc_date, same_day)
    logger.debug(f"Delivery number {number} for {vendor.name} ({len(same_day)} earlier that day)")
    return number


def number_for_invoice(dataset: Dataset, customer: Party, doc_date: date) -> str:
    """Number for a new invoice to ``customer`` dated ``doc_date``."""
    doc_date = calendar_date(doc_date)
    same_day: List[str] = [
        invoice.number
        for invoice in dataset.invoices
        if invoice.customer_id == customer.id and calendar_date(invoice.date) == doc_date
    ]
    number = next_document_number(party_code_for(customer), doc_date, same_day)
    logger.debug(f"Invoice number {number} for {customer.name} ({len(same_day)} earlier that day)")
    return number
