"""
Contact import pipeline.

Turns spreadsheet rows into parties: each phone is validated, the batch is
deduplicated by digits (first occurrence wins), numbers are matched against
existing parties by exact or suffix match, and the rest are created.

The whole batch is one transaction. If anything fails, every insert is
rolled back and ImportFailure is raised; on success every row is reported as
created, matched or rejected.
"""

import csv
import io
import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Optional

from openpyxl import load_workbook
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chatrelay.errors import ChatRelayError, ImportFailure, InvalidPhone, InvalidRequest
from chatrelay.groups import add_members
from chatrelay.identity import create_party_if_absent, display_name, normalize_phone
from chatrelay.models import Party

logger = logging.getLogger(__name__)

PHONE_HEADER_KEYWORDS = ("phone", "mobile", "number", "whatsapp", "tel")
NAME_HEADER_KEYWORDS = ("name", "nom", "fullname")
SUPPORTED_EXTENSIONS = ("csv", "xlsx")


@dataclass
class ImportRow:
    phone: str
    name: Optional[str] = None


@dataclass
class RejectedRow:
    value: str
    reason: str


@dataclass
class ParsedSheet:
    rows: list[ImportRow]
    rejected: list[RejectedRow] = field(default_factory=list)


@dataclass
class ResolvedContact:
    party_id: str
    name: str
    phone: str
    is_new: bool


@dataclass
class ImportResult:
    users: list[ResolvedContact] = field(default_factory=list)
    invalid: list[RejectedRow] = field(default_factory=list)
    added_to_group: int = 0

    @property
    def total(self) -> int:
        return len(self.users)

    @property
    def new(self) -> int:
        return sum(1 for u in self.users if u.is_new)

    @property
    def existing(self) -> int:
        return sum(1 for u in self.users if not u.is_new)


def validate_import_phone(raw: str) -> str:
    """
    Validate an imported phone number.

    Returns:
        The number's digits.

    Raises:
        InvalidPhone: with reason "starts with 0", "less than 10 digits" or
            "more than 15 digits"
    """
    value = "" if raw is None else str(raw).strip()
    digits = re.sub(r"\D", "", value)
    if digits.startswith("0"):
        raise InvalidPhone(value, "starts with 0")
    if len(digits) < 10:
        raise InvalidPhone(value, "less than 10 digits")
    if len(digits) > 15:
        raise InvalidPhone(value, "more than 15 digits")
    return digits


def _digits(value: str) -> str:
    return re.sub(r"\D", "", value)


def _find_match(digits: str, by_digits: dict[str, Party]) -> Optional[Party]:
    party = by_digits.get(digits)
    if party is not None:
        return party
    for candidate_digits, candidate in by_digits.items():
        if candidate_digits.endswith(digits) or digits.endswith(candidate_digits):
            return candidate
    return None


def resolve_import(
    db: Session,
    rows: Iterable[ImportRow],
    rejected: Iterable[RejectedRow] = (),
) -> ImportResult:
    """
    Resolve imported rows to parties inside the caller's transaction.

    Args:
        db: Database session (caller commits or rolls back)
        rows: Raw (phone, name) rows
        rejected: Rows the parser already rejected

    Returns:
        ImportResult listing every valid unique number and every rejection.
    """
    result = ImportResult(invalid=list(rejected))

    unique: dict[str, ImportRow] = {}
    for row in rows:
        try:
            digits = validate_import_phone(row.phone)
        except InvalidPhone as e:
            result.invalid.append(RejectedRow(value=e.value, reason=e.reason))
            continue
        if digits not in unique:
            unique[digits] = row

    if not unique:
        logger.info(f"Import has no valid numbers ({len(result.invalid)} rejected)")
        return result

    by_digits = {_digits(p.id): p for p in db.execute(select(Party)).scalars()}

    for digits, row in unique.items():
        phone = str(row.phone).strip()
        row_name = (row.name or "").strip()
        party = _find_match(digits, by_digits)
        if party is not None:
            name = display_name(party.custom_name, party.whatsapp_name, party.name, row_name or party.id)
            result.users.append(ResolvedContact(party.id, name, phone, is_new=False))
            continue

        identifier = normalize_phone(digits)
        created = create_party_if_absent(db, identifier, row_name or identifier)
        by_digits[_digits(identifier)] = db.get(Party, identifier)
        result.users.append(ResolvedContact(identifier, row_name or identifier, phone, is_new=created))

    logger.info(
        f"Import resolved {result.total} numbers: {result.new} new, "
        f"{result.existing} existing, {len(result.invalid)} rejected"
    )
    return result


def import_contacts(
    db: Session,
    sheet: ParsedSheet,
    owner_id: str,
    group_id: Optional[str] = None,
) -> ImportResult:
    """
    Import a parsed sheet atomically, optionally adding the contacts to a group.

    Raises:
        ImportFailure: the database rejected part of the batch; nothing was kept
        NotFound, Forbidden: the target group is unknown or not the caller's
    """
    try:
        result = resolve_import(db, sheet.rows, sheet.rejected)
        if group_id and result.users:
            result.added_to_group = add_members(
                db, group_id, owner_id, [u.party_id for u in result.users]
            )
        db.commit()
    except ChatRelayError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Contact import rolled back: {e}")
        raise ImportFailure("contact import failed, no contacts were saved")
    return result


def _cell_text(value) -> str:
    if value is None:
        return ""
    # Spreadsheet apps store long numbers as floats
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def _read_csv(content: bytes) -> list[list[str]]:
    text = content.decode("utf-8-sig", errors="replace")
    return [[_cell_text(cell) for cell in row] for row in csv.reader(io.StringIO(text))]


def _read_xlsx(content: bytes) -> list[list[str]]:
    try:
        workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except Exception as e:
        raise InvalidRequest(f"could not read spreadsheet: {e}")
    try:
        sheet = workbook.worksheets[0]
        return [[_cell_text(cell) for cell in row] for row in sheet.iter_rows(values_only=True)]
    finally:
        workbook.close()


def _find_column(headers: list[str], keywords: tuple[str, ...]) -> int:
    for index, header in enumerate(headers):
        lowered = header.lower()
        if any(keyword in lowered for keyword in keywords):
            return index
    return -1


def parse_contact_sheet(filename: str, content: bytes) -> ParsedSheet:
    """
    Read (phone, name) rows from an uploaded .csv or .xlsx file.

    The first row is the header. The phone column is the first header
    mentioning phone/mobile/number/whatsapp/tel, the name column the first
    mentioning name/nom/fullname. Rows with an empty phone cell are skipped.

    Raises:
        InvalidRequest: unsupported format, empty file or no phone column
    """
    extension = (filename or "").rsplit(".", 1)[-1].lower() if "." in (filename or "") else ""
    if extension not in SUPPORTED_EXTENSIONS:
        raise InvalidRequest("Invalid file format. Please upload an Excel (.xlsx) or CSV file.")

    table = _read_csv(content) if extension == "csv" else _read_xlsx(content)
    table = [row for row in table if any(row)]
    if len(table) < 2:
        raise InvalidRequest("The file is empty or only contains headers.")

    headers = table[0]
    phone_column = _find_column(headers, PHONE_HEADER_KEYWORDS)
    if phone_column == -1:
        raise InvalidRequest(
            'Could not find phone number column. Please name it "phone", "mobile", "number" or "whatsapp".'
        )
    name_column = _find_column(headers, NAME_HEADER_KEYWORDS)
    if name_column == phone_column:
        name_column = -1

    rows = []
    for row in table[1:]:
        phone = row[phone_column] if phone_column < len(row) else ""
        if not phone:
            continue
        name = row[name_column] if 0 <= name_column < len(row) else ""
        rows.append(ImportRow(phone=phone, name=name or None))

    logger.info(f"Parsed {len(rows)} rows from {filename}")
    return ParsedSheet(rows=rows)
