"""
Tests for journal entries: balancing, posting, lifecycle and reversal
"""

import pytest
from decimal import Decimal
from datetime import date

from core_accounting.accounts import AccountDirectory
from core_accounting.audit import AuditTrail, AuditEventType
from core_accounting.errors import (
    AlreadyPostedError, CannotDeletePostedEntryError, EntryAlreadyPostedError,
    InvalidJournalLineError, InvalidStatusTransitionError, JournalEntryNotFoundError,
    TooFewLinesError, UnbalancedEntryError
)
from core_accounting.ledger import (
    JournalEntryStatus, JournalEntryStore, JOURNAL_STATUS_TRANSITIONS
)
from core_accounting.storage import InMemoryStorage


TENANT = "tenant-1"
COMPANY = "company-1"


class TestJournalEntryStore:
    """Test journal entry creation and lifecycle"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.accounts = AccountDirectory(self.storage, self.audit)
        self.ledger = JournalEntryStore(self.storage, self.audit, self.accounts)

        self.accounts.register_company(TENANT, "Acme Ltd", company_id=COMPANY)
        self.cash = self.accounts.create_account(TENANT, COMPANY, "Cash/Bank")
        self.rent = self.accounts.create_account(TENANT, COMPANY, "Rent Expense")
        self.travel = self.accounts.create_account(TENANT, COMPANY, "Travel Expense")

    def _simple_lines(self, amount="100.00"):
        return [
            {"account_id": self.rent.id, "debit": amount, "credit": "0", "memo": "March rent"},
            {"account_id": self.cash.id, "debit": "0", "credit": amount},
        ]

    def _create(self, amount="100.00", post=False, reference=None, entry_date=date(2025, 3, 1)):
        return self.ledger.create_entry(
            TENANT, COMPANY, entry_date, "Rent payment",
            self._simple_lines(amount), reference=reference, post=post
        )

    def test_create_draft_entry(self):
        entry = self._create()

        assert entry.status == JournalEntryStatus.DRAFT
        assert len(entry.lines) == 2
        assert entry.total_debit == Decimal("100.00")
        assert entry.is_balanced
        assert not entry.is_posted
        assert entry.lines[0].memo == "March rent"

        stored = self.ledger.require_entry(entry.id)
        assert stored.lines[0].debit == Decimal("100.00")
        assert stored.entry_date == date(2025, 3, 1)

    def test_create_and_post(self):
        entry = self._create(post=True)

        assert entry.status == JournalEntryStatus.POSTED
        assert entry.posted_at is not None
        events = self.audit.get_events_for_entity("journal_entry", entry.id)
        assert [e.event_type for e in events] == [
            AuditEventType.JOURNAL_ENTRY_CREATED,
            AuditEventType.JOURNAL_ENTRY_POSTED,
        ]

    def test_amounts_are_rounded_to_cents(self):
        entry = self._create(amount="10.005")
        assert entry.lines[0].debit == Decimal("10.01")
        assert entry.lines[1].credit == Decimal("10.01")

    def test_residual_absorbed_on_last_credit_line(self):
        lines = [
            {"account_id": self.rent.id, "debit": "33.333"},
            {"account_id": self.travel.id, "debit": "33.333"},
            {"account_id": self.accounts.create_account(TENANT, COMPANY, "Office Supplies Expense").id,
             "debit": "33.333"},
            {"account_id": self.cash.id, "credit": "100.00"},
        ]
        entry = self.ledger.create_entry(TENANT, COMPANY, date(2025, 3, 1), "Split", lines)

        assert entry.lines[-1].credit == Decimal("99.99")
        assert entry.total_debit == entry.total_credit == Decimal("99.99")

    def test_residual_absorbed_on_last_debit_line(self):
        lines = [
            {"account_id": self.cash.id, "credit": "100.00"},
            {"account_id": self.rent.id, "debit": "33.333"},
            {"account_id": self.travel.id, "debit": "33.333"},
            {"account_id": self.accounts.create_account(TENANT, COMPANY, "Office Supplies Expense").id,
             "debit": "33.333"},
        ]
        entry = self.ledger.create_entry(TENANT, COMPANY, date(2025, 3, 1), "Split", lines)

        assert entry.lines[-1].debit == Decimal("33.34")
        assert entry.total_debit == entry.total_credit == Decimal("100.00")

    def test_sub_cent_rounding_drift_is_absorbed(self):
        supplies = self.accounts.create_account(TENANT, COMPANY, "Office Supplies Expense")
        lines = [{"account_id": self.rent.id, "debit": "10.005"} for _ in range(2)]
        lines += [{"account_id": supplies.id, "debit": "10.005"} for _ in range(2)]
        lines.append({"account_id": self.cash.id, "credit": "40.02"})

        entry = self.ledger.create_entry(TENANT, COMPANY, date(2025, 3, 1), "Stationery", lines)

        assert [line.debit for line in entry.lines[:4]] == [Decimal("10.01")] * 4
        assert entry.lines[-1].credit == Decimal("40.04")
        assert entry.total_debit == entry.total_credit == Decimal("40.04")

    def test_unbalanced_entry_rejected(self):
        lines = [
            {"account_id": self.rent.id, "debit": "100.00"},
            {"account_id": self.cash.id, "credit": "99.98"},
        ]
        with pytest.raises(UnbalancedEntryError) as exc_info:
            self.ledger.create_entry(TENANT, COMPANY, date(2025, 3, 1), "Off", lines)

        assert exc_info.value.code == "unbalanced"
        assert exc_info.value.difference == Decimal("0.02")
        assert self.ledger.list_entries(TENANT, COMPANY) == []

    def test_too_few_lines(self):
        with pytest.raises(TooFewLinesError) as exc_info:
            self.ledger.create_entry(TENANT, COMPANY, date(2025, 3, 1), "One line",
                                     [{"account_id": self.rent.id, "debit": "10"}])
        assert exc_info.value.code == "at_least_two_lines"

    def test_negative_amount_rejected(self):
        lines = [
            {"account_id": self.rent.id, "debit": "-10.00"},
            {"account_id": self.cash.id, "credit": "-10.00"},
        ]
        with pytest.raises(InvalidJournalLineError):
            self.ledger.create_entry(TENANT, COMPANY, date(2025, 3, 1), "Negative", lines)

    def test_zero_line_rejected(self):
        lines = [
            {"account_id": self.rent.id, "debit": "10.00"},
            {"account_id": self.cash.id, "credit": "10.00"},
            {"account_id": self.travel.id},
        ]
        with pytest.raises(InvalidJournalLineError):
            self.ledger.create_entry(TENANT, COMPANY, date(2025, 3, 1), "Empty line", lines)

    def test_unknown_and_foreign_accounts_rejected(self):
        lines = [
            {"account_id": "missing", "debit": "10.00"},
            {"account_id": self.cash.id, "credit": "10.00"},
        ]
        with pytest.raises(InvalidJournalLineError):
            self.ledger.create_entry(TENANT, COMPANY, date(2025, 3, 1), "Unknown", lines)

        with pytest.raises(InvalidJournalLineError):
            self.ledger.create_entry(TENANT, "other-co", date(2025, 3, 1), "Foreign",
                                     self._simple_lines())

    def test_inactive_account_rejected(self):
        self.accounts.deactivate_account(self.rent.id)
        with pytest.raises(InvalidJournalLineError) as exc_info:
            self._create()
        assert exc_info.value.code == "invalid_line"

    def test_post_twice_raises(self):
        entry = self._create(post=True)
        with pytest.raises(AlreadyPostedError) as exc_info:
            self.ledger.post_entry(entry.id)
        assert exc_info.value.code == "already_posted"

    def test_update_draft_replaces_lines(self):
        entry = self._create()
        updated = self.ledger.update_entry(entry.id, self._simple_lines("250.00"), memo="Updated rent")

        assert updated.memo == "Updated rent"
        assert updated.total_debit == Decimal("250.00")
        assert self.ledger.require_entry(entry.id).total_credit == Decimal("250.00")

    def test_update_posted_entry_raises(self):
        entry = self._create(post=True)
        with pytest.raises(EntryAlreadyPostedError) as exc_info:
            self.ledger.update_entry(entry.id, self._simple_lines("1.00"))
        assert exc_info.value.code == "already_posted"

    def test_delete_draft(self):
        entry = self._create()
        self.ledger.delete_entry(entry.id)

        assert self.ledger.get_entry(entry.id) is None
        with pytest.raises(JournalEntryNotFoundError):
            self.ledger.require_entry(entry.id)

    def test_delete_posted_raises(self):
        entry = self._create(post=True)
        with pytest.raises(CannotDeletePostedEntryError):
            self.ledger.delete_entry(entry.id)

    def test_approval_workflow(self):
        entry = self._create()

        pending = self.ledger.submit_for_approval(entry.id)
        assert pending.status == JournalEntryStatus.PENDING_APPROVAL

        with pytest.raises(EntryAlreadyPostedError):
            self.ledger.update_entry(entry.id, self._simple_lines("5.00"))

        returned = self.ledger.return_to_draft(entry.id)
        assert returned.status == JournalEntryStatus.DRAFT

        self.ledger.submit_for_approval(entry.id)
        posted = self.ledger.post_entry(entry.id)
        assert posted.status == JournalEntryStatus.POSTED

    def test_transition_table(self):
        assert JOURNAL_STATUS_TRANSITIONS[JournalEntryStatus.REVERSED] == set()
        entry = self._create(post=True)

        with pytest.raises(InvalidStatusTransitionError) as exc_info:
            self.ledger.return_to_draft(entry.id)
        assert exc_info.value.current == "POSTED"
        assert exc_info.value.target == "DRAFT"

    def test_reverse_entry(self):
        entry = self._create(post=True, reference="BILL-7")
        reversal = self.ledger.reverse_entry(entry.id, "Duplicate bill", date(2025, 3, 5))

        original = self.ledger.require_entry(entry.id)
        assert original.status == JournalEntryStatus.REVERSED
        assert original.reversed_by == reversal.id
        assert original.lines[0].debit == Decimal("100.00")

        assert reversal.status == JournalEntryStatus.POSTED
        assert reversal.reverses == entry.id
        assert reversal.reference == "REV-BILL-7"
        assert reversal.memo == "REVERSAL: Duplicate bill"
        assert reversal.entry_date == date(2025, 3, 5)
        for original_line, mirror in zip(original.lines, reversal.lines):
            assert mirror.account_id == original_line.account_id
            assert mirror.debit == original_line.credit
            assert mirror.credit == original_line.debit

    def test_reverse_defaults_to_today(self):
        entry = self._create(post=True)
        reversal = self.ledger.reverse_entry(entry.id, "Mistake")
        assert reversal.entry_date == date.today()
        assert reversal.reference == f"REV-{entry.id}"

    def test_reverse_requires_posted_entry(self):
        draft = self._create()
        with pytest.raises(InvalidStatusTransitionError):
            self.ledger.reverse_entry(draft.id, "Not posted")

        posted = self._create(post=True)
        self.ledger.reverse_entry(posted.id, "Once")
        with pytest.raises(InvalidStatusTransitionError):
            self.ledger.reverse_entry(posted.id, "Twice")

    def test_entry_view_resolves_accounts(self):
        entry = self._create(post=True, reference="BILL-1")
        view = self.ledger.entry_view(entry.id)

        assert view.status == "POSTED"
        assert view.reference == "BILL-1"
        assert view.total_debit == view.total_credit == Decimal("100.00")
        assert [line.account_name for line in view.lines] == ["Rent Expense", "Cash/Bank"]
        assert view.lines[0].account_type == "EXPENSE"
        assert view.model_dump(by_alias=True)["date"] == date(2025, 3, 1)

    def test_find_and_list(self):
        first = self._create(reference="A", entry_date=date(2025, 1, 10), post=True)
        second = self._create(reference="B", entry_date=date(2025, 2, 10))
        travel_lines = [
            {"account_id": self.travel.id, "debit": "40.00"},
            {"account_id": self.cash.id, "credit": "40.00"},
        ]
        third = self.ledger.create_entry(TENANT, COMPANY, date(2025, 3, 10), "Taxi", travel_lines)

        assert [e.id for e in self.ledger.find_by_reference(TENANT, COMPANY, "A")] == [first.id]
        assert [e.id for e in self.ledger.list_entries(TENANT, COMPANY)] == [first.id, second.id, third.id]
        assert [e.id for e in self.ledger.list_entries(
            TENANT, COMPANY, status=JournalEntryStatus.POSTED)] == [first.id]
        assert [e.id for e in self.ledger.list_entries(
            TENANT, COMPANY, start_date=date(2025, 2, 1), end_date=date(2025, 2, 28))] == [second.id]
        assert [e.id for e in self.ledger.list_entries(
            TENANT, COMPANY, account_id=self.travel.id)] == [third.id]

    def test_error_serialization(self):
        lines = [
            {"account_id": self.rent.id, "debit": "100.00"},
            {"account_id": self.cash.id, "credit": "90.00"},
        ]
        with pytest.raises(UnbalancedEntryError) as exc_info:
            self.ledger.create_entry(TENANT, COMPANY, date(2025, 3, 1), "Off", lines)

        payload = exc_info.value.to_dict()
        assert payload["code"] == "unbalanced"
        assert payload["category"] == "validation"
        assert payload["details"]["difference"] == "10.00"
