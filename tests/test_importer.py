"""
Tests for the contact import pipeline.

Tests cover:
- Phone validation reasons
- Dedup within a batch and suffix matching against existing parties
- Spreadsheet parsing (.csv and .xlsx)
- All-or-nothing batches
- POST /groups/import
"""

import io

import pytest
from openpyxl import Workbook

from chatrelay.errors import Forbidden, InvalidPhone, InvalidRequest
from chatrelay.groups import create_group, member_ids
from chatrelay.identity import resolve_phone_party
from chatrelay.importer import (
    ImportRow,
    ParsedSheet,
    import_contacts,
    parse_contact_sheet,
    resolve_import,
    validate_import_phone,
)
from chatrelay.models import Party


OWNER = "owner-account"


class TestValidateImportPhone:
    """Test row-level phone validation."""

    @pytest.mark.parametrize("raw, reason", [
        ("0159999", "starts with 0"),
        ("015551234567", "starts with 0"),
        ("555123", "less than 10 digits"),
        ("1234567890123456", "more than 15 digits"),
    ])
    def test_rejections(self, raw, reason):
        with pytest.raises(InvalidPhone) as exc_info:
            validate_import_phone(raw)
        assert exc_info.value.reason == reason

    def test_formatting_stripped(self):
        assert validate_import_phone("+1 (555) 123-4567") == "15551234567"


class TestResolveImport:
    """Test batch resolution against existing parties."""

    def test_dedup_and_rejection(self, db):
        rows = [
            ImportRow("15551234567", "Alice"),
            ImportRow("0159999", "Bad"),
            ImportRow("15551234567", "Alice-dup"),
        ]

        result = import_contacts(db, ParsedSheet(rows=rows), OWNER)

        assert result.total == 1
        assert result.new == 1
        assert len(result.invalid) == 1
        assert result.invalid[0].value == "0159999"
        assert result.invalid[0].reason == "starts with 0"
        assert result.users[0].party_id == "+15551234567"
        assert result.users[0].name == "Alice"
        assert db.query(Party).count() == 1

    def test_existing_party_matched(self, db):
        resolve_phone_party(db, "+15551234567", display_name_hint="Alice")
        db.commit()

        result = resolve_import(db, [ImportRow("15551234567", "Someone")])

        assert result.existing == 1
        assert result.users[0].is_new is False
        assert result.users[0].name == "Alice"

    def test_suffix_match(self, db):
        resolve_phone_party(db, "+445551234567")
        db.commit()

        result = resolve_import(db, [ImportRow("5551234567", "Local format")])

        assert result.users[0].party_id == "+445551234567"
        assert result.users[0].is_new is False

    def test_suffix_duplicates_within_batch(self, db):
        result = resolve_import(db, [
            ImportRow("445551234567", "Full"),
            ImportRow("5551234567", "Short"),
        ])

        assert [u.is_new for u in result.users] == [True, False]
        assert {u.party_id for u in result.users} == {"+445551234567"}


class TestImportContacts:
    """Test the transactional import."""

    def test_adds_to_group(self, db):
        group = create_group(db, OWNER, "Leads")
        db.commit()

        result = import_contacts(
            db,
            ParsedSheet(rows=[ImportRow("15551234567", "Alice"), ImportRow("15557654321", "Bob")]),
            OWNER,
            group_id=group.id,
        )

        assert result.added_to_group == 2
        assert sorted(member_ids(db, group.id)) == ["+15551234567", "+15557654321"]

    def test_failure_rolls_back_everything(self, db):
        group = create_group(db, "someone-else", "Theirs")
        db.commit()

        with pytest.raises(Forbidden):
            import_contacts(db, ParsedSheet(rows=[ImportRow("15551234567", "Alice")]), OWNER, group_id=group.id)

        assert db.query(Party).count() == 0


class TestParseContactSheet:
    """Test spreadsheet parsing."""

    def test_csv(self):
        content = b"Full Name,Phone Number\nAlice,15551234567\nBob,+1 555 765 4321\n,\n"

        sheet = parse_contact_sheet("contacts.csv", content)

        assert [(r.phone, r.name) for r in sheet.rows] == [
            ("15551234567", "Alice"),
            ("+1 555 765 4321", "Bob"),
        ]

    def test_xlsx(self):
        workbook = Workbook()
        worksheet = workbook.active
        worksheet.append(["Mobile", "Name"])
        worksheet.append([15551234567, "Alice"])
        worksheet.append(["15557654321", None])
        buffer = io.BytesIO()
        workbook.save(buffer)

        sheet = parse_contact_sheet("contacts.xlsx", buffer.getvalue())

        assert [(r.phone, r.name) for r in sheet.rows] == [
            ("15551234567", "Alice"),
            ("15557654321", None),
        ]

    def test_unsupported_extension(self):
        with pytest.raises(InvalidRequest):
            parse_contact_sheet("contacts.txt", b"phone\n15551234567\n")

    def test_headers_only(self):
        with pytest.raises(InvalidRequest):
            parse_contact_sheet("contacts.csv", b"phone,name\n")

    def test_no_phone_column(self):
        with pytest.raises(InvalidRequest):
            parse_contact_sheet("contacts.csv", b"email,name\na@example.com,Alice\n")


class TestImportEndpoint:
    """Test POST /groups/import."""

    def test_import_scenario(self, client, owner_headers):
        content = b"phone,name\n15551234567,Alice\n0159999,Bad\n15551234567,Alice-dup\n"

        response = client.post(
            "/groups/import",
            files={"file": ("contacts.csv", content, "text/csv")},
            headers=owner_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["new"] == 1
        assert data["invalid"] == [{"value": "0159999", "reason": "starts with 0"}]

    def test_import_into_group(self, client, owner_headers):
        group = client.post("/groups", json={"name": "Leads"}, headers=owner_headers).json()

        response = client.post(
            "/groups/import",
            files={"file": ("contacts.csv", b"phone\n15551234567\n", "text/csv")},
            data={"group_id": group["id"]},
            headers=owner_headers,
        )

        assert response.json()["added_to_group"] == 1
        detail = client.get(f"/groups/{group['id']}", headers=owner_headers).json()
        assert detail["group"]["member_count"] == 1

    def test_no_valid_numbers(self, client, owner_headers):
        response = client.post(
            "/groups/import",
            files={"file": ("contacts.csv", b"phone\n0123\n", "text/csv")},
            headers=owner_headers,
        )

        assert response.status_code == 400
        assert "No valid phone numbers" in response.json()["detail"]
