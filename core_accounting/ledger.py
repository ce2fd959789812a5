"""
Double-Entry Ledger Engine

Core bookkeeping engine that ensures every journal entry is balanced
(debits = credits) before it can be posted. Posted entries are immutable:
they are corrected by reversal, never edited, and balances are always
derived from entry lines.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set
from enum import Enum
import uuid

from .amounts import ZERO, quantize_cents, to_decimal
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .accounts import AccountDirectory
from .errors import (
    AlreadyPostedError, CannotDeletePostedEntryError, EntryAlreadyPostedError,
    InvalidJournalLineError, InvalidStatusTransitionError, JournalEntryNotFoundError,
    TooFewLinesError, UnbalancedEntryError
)
from .logging_config import get_logger, log_action
from .schemas import JournalEntryView, JournalLineView


class JournalEntryStatus(Enum):
    """States of a journal entry"""
    DRAFT = "DRAFT"                        # Editable, not yet in balances
    PENDING_APPROVAL = "PENDING_APPROVAL"  # Waiting for an approver
    POSTED = "POSTED"                      # Finalized and immutable
    REVERSED = "REVERSED"                  # Posted, then offset by a reversing entry


JOURNAL_STATUS_TRANSITIONS: Dict[JournalEntryStatus, Set[JournalEntryStatus]] = {
    JournalEntryStatus.DRAFT: {JournalEntryStatus.POSTED, JournalEntryStatus.PENDING_APPROVAL},
    JournalEntryStatus.PENDING_APPROVAL: {JournalEntryStatus.POSTED, JournalEntryStatus.DRAFT},
    JournalEntryStatus.POSTED: {JournalEntryStatus.REVERSED},
    JournalEntryStatus.REVERSED: set(),
}

# Statuses whose lines count towards balances
POSTED_STATUSES = {JournalEntryStatus.POSTED, JournalEntryStatus.REVERSED}


@dataclass
class JournalLine:
    """
    Individual line item in a journal entry
    Each line affects one account with a debit and/or credit amount
    """
    id: str
    entry_id: str
    account_id: str
    debit: Decimal
    credit: Decimal
    memo: Optional[str] = None
    department: Optional[str] = None
    project: Optional[str] = None
    location: Optional[str] = None

    @property
    def is_debit(self) -> bool:
        return self.debit > 0

    @property
    def net(self) -> Decimal:
        """Signed debit-minus-credit amount"""
        return self.debit - self.credit

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'JournalLine':
        data = dict(data)
        data['debit'] = Decimal(data['debit'])
        data['credit'] = Decimal(data['credit'])
        return cls(**data)


@dataclass
class JournalEntry(StorageRecord):
    """
    Double-entry journal entry with multiple lines that must balance
    """
    tenant_id: str
    company_id: str
    entry_date: date
    memo: str
    status: JournalEntryStatus
    lines: List[JournalLine] = field(default_factory=list)
    reference: Optional[str] = None
    entry_type_id: Optional[str] = None
    posted_at: Optional[datetime] = None
    reversed_by: Optional[str] = None  # ID of reversing journal entry
    reverses: Optional[str] = None     # ID of original entry being reversed
    created_by: Optional[str] = None

    @property
    def total_debit(self) -> Decimal:
        return sum((line.debit for line in self.lines), ZERO)

    @property
    def total_credit(self) -> Decimal:
        return sum((line.credit for line in self.lines), ZERO)

    @property
    def is_balanced(self) -> bool:
        return quantize_cents(self.total_debit - self.total_credit) == ZERO

    @property
    def is_posted(self) -> bool:
        return self.status in POSTED_STATUSES

    def get_affected_accounts(self) -> Set[str]:
        """Get set of account IDs affected by this entry"""
        return {line.account_id for line in self.lines}

    def can_transition_to(self, target: JournalEntryStatus) -> bool:
        return target in JOURNAL_STATUS_TRANSITIONS[self.status]

    def transition_to(self, target: JournalEntryStatus) -> None:
        if not self.can_transition_to(target):
            raise InvalidStatusTransitionError("journal entry", self.status.value, target.value)
        self.status = target
        self.updated_at = datetime.now(timezone.utc)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'JournalEntry':
        data = dict(data)
        data['entry_date'] = date.fromisoformat(data['entry_date'])
        data['status'] = JournalEntryStatus(data['status'])
        data['lines'] = [JournalLine.from_dict(line) for line in data['lines']]
        if data.get('posted_at'):
            data['posted_at'] = datetime.fromisoformat(data['posted_at'])
        return super().from_dict(data)


def _line_field(raw: Any, name: str, default: Any = None) -> Any:
    """Read a field from a dict or an attribute-style line input"""
    if isinstance(raw, dict):
        return raw.get(name, default)
    return getattr(raw, name, default)


class JournalEntryStore:
    """
    Creates, balances, posts and reverses journal entries
    Balances are derived from journal lines, never stored separately
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        accounts: AccountDirectory,
        balance_tolerance: Decimal = Decimal("0.01")
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.accounts = accounts
        self.balance_tolerance = balance_tolerance
        self.table_name = "journal_entries"
        self.logger = get_logger("core_accounting.ledger")

    def create_entry(
        self,
        tenant_id: str,
        company_id: str,
        entry_date: date,
        memo: str,
        lines: Iterable[Any],
        reference: Optional[str] = None,
        post: bool = False,
        entry_type_id: Optional[str] = None,
        created_by: Optional[str] = None
    ) -> JournalEntry:
        """
        Create a new journal entry in DRAFT state, optionally posting it

        Args:
            tenant_id: Owning tenant
            company_id: Owning company
            entry_date: Accounting date of the entry
            memo: Human-readable description
            lines: Line inputs (dicts or objects with account_id, debit, credit,
                memo, department, project, location)
            reference: External reference (expense id, bill number, ...)
            post: Post the entry immediately after creating it
            entry_type_id: Optional entry type classification
            created_by: User who created the entry

        Returns:
            Created JournalEntry, DRAFT or POSTED

        Raises:
            TooFewLinesError: Fewer than two lines
            InvalidJournalLineError: Negative amount or unknown/inactive account
            UnbalancedEntryError: Residual larger than the rounding tolerance
        """
        entry_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)

        with self.storage.atomic():
            journal_lines = self._build_lines(entry_id, tenant_id, company_id, lines)

            entry = JournalEntry(
                id=entry_id,
                created_at=now,
                updated_at=now,
                tenant_id=tenant_id,
                company_id=company_id,
                entry_date=entry_date,
                memo=memo,
                status=JournalEntryStatus.DRAFT,
                lines=journal_lines,
                reference=reference,
                entry_type_id=entry_type_id,
                created_by=created_by
            )
            self._save_entry(entry)

            self.audit_trail.log_event(
                event_type=AuditEventType.JOURNAL_ENTRY_CREATED,
                entity_type="journal_entry",
                entity_id=entry.id,
                tenant_id=tenant_id,
                metadata={
                    "company_id": company_id,
                    "reference": reference,
                    "memo": memo,
                    "line_count": len(journal_lines),
                    "total": entry.total_debit
                }
            )

            if post:
                entry = self.post_entry(entry.id)

        return entry

    def update_entry(self, entry_id: str, lines: Iterable[Any], memo: Optional[str] = None) -> JournalEntry:
        """
        Replace the full line set (and optionally the memo) of a DRAFT entry

        Raises:
            EntryAlreadyPostedError: Entry is not a draft
        """
        with self.storage.atomic():
            entry = self.require_entry(entry_id, for_update=True)
            if entry.status != JournalEntryStatus.DRAFT:
                raise EntryAlreadyPostedError(
                    f"Journal entry {entry_id} is {entry.status.value} and can no longer be edited",
                    entry_id=entry_id, status=entry.status.value
                )

            entry.lines = self._build_lines(entry.id, entry.tenant_id, entry.company_id, lines)
            if memo is not None:
                entry.memo = memo
            entry.updated_at = datetime.now(timezone.utc)
            self._save_entry(entry)

            self.audit_trail.log_event(
                event_type=AuditEventType.JOURNAL_ENTRY_UPDATED,
                entity_type="journal_entry",
                entity_id=entry.id,
                tenant_id=entry.tenant_id,
                metadata={"line_count": len(entry.lines), "total": entry.total_debit}
            )
            return entry

    def submit_for_approval(self, entry_id: str) -> JournalEntry:
        """Move a DRAFT entry to PENDING_APPROVAL"""
        return self._change_status(
            entry_id, JournalEntryStatus.PENDING_APPROVAL, AuditEventType.JOURNAL_ENTRY_SUBMITTED
        )

    def return_to_draft(self, entry_id: str) -> JournalEntry:
        """Send a PENDING_APPROVAL entry back to DRAFT"""
        return self._change_status(
            entry_id, JournalEntryStatus.DRAFT, AuditEventType.JOURNAL_ENTRY_RETURNED
        )

    def _change_status(self, entry_id: str, target: JournalEntryStatus,
                       event_type: AuditEventType) -> JournalEntry:
        with self.storage.atomic():
            entry = self.require_entry(entry_id, for_update=True)
            previous = entry.status
            entry.transition_to(target)
            self._save_entry(entry)

            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="journal_entry",
                entity_id=entry.id,
                tenant_id=entry.tenant_id,
                metadata={"from": previous.value, "to": target.value}
            )
            return entry

    def post_entry(self, entry_id: str) -> JournalEntry:
        """
        Post a journal entry (make it immutable)

        The balance is re-validated strictly: no residual is absorbed here.

        Raises:
            AlreadyPostedError: Entry is already POSTED
            UnbalancedEntryError: Debits and credits differ
            InvalidStatusTransitionError: Entry is REVERSED
        """
        with self.storage.atomic():
            entry = self.require_entry(entry_id, for_update=True)
            if entry.status == JournalEntryStatus.POSTED:
                raise AlreadyPostedError(f"Journal entry {entry_id} is already posted", entry_id=entry_id)

            if len(entry.lines) < 2:
                raise TooFewLinesError("Journal entry must have at least two lines", entry_id=entry_id)

            total_debit = quantize_cents(entry.total_debit)
            total_credit = quantize_cents(entry.total_credit)
            if total_debit != total_credit:
                raise UnbalancedEntryError(total_debit, total_credit)

            entry.transition_to(JournalEntryStatus.POSTED)
            entry.posted_at = entry.updated_at
            self._save_entry(entry)

            self.audit_trail.log_event(
                event_type=AuditEventType.JOURNAL_ENTRY_POSTED,
                entity_type="journal_entry",
                entity_id=entry.id,
                tenant_id=entry.tenant_id,
                metadata={
                    "reference": entry.reference,
                    "posted_at": entry.posted_at,
                    "total": total_debit
                }
            )

        log_action(
            self.logger, "info", f"Journal entry posted: {entry.id}",
            action="post_journal_entry", resource=f"journal_entry:{entry.id}",
            tenant_id=entry.tenant_id,
            extra={"reference": entry.reference, "total": str(total_debit)}
        )
        return entry

    def reverse_entry(self, entry_id: str, reason: str,
                      reversal_date: Optional[date] = None) -> JournalEntry:
        """
        Reverse a posted journal entry by creating a mirror entry

        The reversing entry swaps debit and credit on every line, references
        the original through ``reverses`` and is posted immediately. The
        original's lines are left untouched.

        Args:
            entry_id: ID of the journal entry to reverse
            reason: Reason for the reversal
            reversal_date: Accounting date of the reversal (defaults to today)

        Returns:
            New reversing JournalEntry
        """
        with self.storage.atomic():
            original = self.require_entry(entry_id, for_update=True)
            if not original.can_transition_to(JournalEntryStatus.REVERSED):
                raise InvalidStatusTransitionError(
                    "journal entry", original.status.value, JournalEntryStatus.REVERSED.value
                )

            reversal_id = str(uuid.uuid4())
            now = datetime.now(timezone.utc)
            reversing_lines = [
                JournalLine(
                    id=str(uuid.uuid4()),
                    entry_id=reversal_id,
                    account_id=line.account_id,
                    debit=line.credit,
                    credit=line.debit,
                    memo=f"REVERSAL: {line.memo}" if line.memo else "REVERSAL",
                    department=line.department,
                    project=line.project,
                    location=line.location
                )
                for line in original.lines
            ]

            reversal = JournalEntry(
                id=reversal_id,
                created_at=now,
                updated_at=now,
                tenant_id=original.tenant_id,
                company_id=original.company_id,
                entry_date=reversal_date or date.today(),
                memo=f"REVERSAL: {reason}",
                status=JournalEntryStatus.POSTED,
                lines=reversing_lines,
                reference=f"REV-{original.reference or original.id}",
                entry_type_id=original.entry_type_id,
                posted_at=now,
                reverses=original.id
            )
            self._save_entry(reversal)

            original.transition_to(JournalEntryStatus.REVERSED)
            original.reversed_by = reversal.id
            self._save_entry(original)

            self.audit_trail.log_event(
                event_type=AuditEventType.JOURNAL_ENTRY_REVERSED,
                entity_type="journal_entry",
                entity_id=original.id,
                tenant_id=original.tenant_id,
                metadata={
                    "original_reference": original.reference,
                    "reversing_entry_id": reversal.id,
                    "reversal_reason": reason
                }
            )

        log_action(
            self.logger, "info", f"Journal entry reversed: {original.id}",
            action="reverse_journal_entry", resource=f"journal_entry:{original.id}",
            tenant_id=original.tenant_id,
            extra={"reversing_entry_id": reversal.id, "reason": reason}
        )
        return reversal

    def delete_entry(self, entry_id: str) -> None:
        """
        Delete a DRAFT journal entry

        Raises:
            CannotDeletePostedEntryError: Entry is not a draft
        """
        with self.storage.atomic():
            entry = self.require_entry(entry_id, for_update=True)
            if entry.status != JournalEntryStatus.DRAFT:
                raise CannotDeletePostedEntryError(
                    f"Journal entry {entry_id} is {entry.status.value}; only drafts can be deleted",
                    entry_id=entry_id, status=entry.status.value
                )
            self.storage.delete(self.table_name, entry_id)

            self.audit_trail.log_event(
                event_type=AuditEventType.JOURNAL_ENTRY_DELETED,
                entity_type="journal_entry",
                entity_id=entry_id,
                tenant_id=entry.tenant_id,
                metadata={"reference": entry.reference}
            )

    def get_entry(self, entry_id: str) -> Optional[JournalEntry]:
        """Get a journal entry by ID"""
        entry_dict = self.storage.load(self.table_name, entry_id)
        if entry_dict:
            return JournalEntry.from_dict(entry_dict)
        return None

    def require_entry(self, entry_id: str, for_update: bool = False) -> JournalEntry:
        if for_update:
            entry_dict = self.storage.load_for_update(self.table_name, entry_id)
        else:
            entry_dict = self.storage.load(self.table_name, entry_id)
        if not entry_dict:
            raise JournalEntryNotFoundError(f"Journal entry {entry_id} not found", entry_id=entry_id)
        return JournalEntry.from_dict(entry_dict)

    def find_by_reference(self, tenant_id: str, company_id: str, reference: str) -> List[JournalEntry]:
        """Get entries carrying an external reference, oldest first"""
        entries = [
            JournalEntry.from_dict(data)
            for data in self.storage.find(self.table_name, {
                "tenant_id": tenant_id, "company_id": company_id, "reference": reference
            })
        ]
        entries.sort(key=lambda e: e.created_at)
        return entries

    def list_entries(
        self,
        tenant_id: str,
        company_id: str,
        status: Optional[JournalEntryStatus] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        account_id: Optional[str] = None
    ) -> List[JournalEntry]:
        """
        List a company's journal entries ordered by date

        Args:
            tenant_id: Owning tenant
            company_id: Owning company
            status: Optional status filter
            start_date: Optional first accounting date (inclusive)
            end_date: Optional last accounting date (inclusive)
            account_id: Only entries with a line on this account
        """
        filters: Dict[str, Any] = {"tenant_id": tenant_id, "company_id": company_id}
        if status:
            filters["status"] = status.value
        entries = [JournalEntry.from_dict(data) for data in self.storage.find(self.table_name, filters)]

        if start_date:
            entries = [e for e in entries if e.entry_date >= start_date]
        if end_date:
            entries = [e for e in entries if e.entry_date <= end_date]
        if account_id:
            entries = [e for e in entries if account_id in e.get_affected_accounts()]

        entries.sort(key=lambda e: (e.entry_date, e.created_at))
        return entries

    def entry_view(self, entry_id: str) -> JournalEntryView:
        """Read model of an entry with resolved account code, name and type"""
        entry = self.require_entry(entry_id)
        line_views = []
        for line in entry.lines:
            account = self.accounts.get_account(line.account_id)
            line_views.append(JournalLineView(
                id=line.id,
                account_id=line.account_id,
                account_code=account.code if account else None,
                account_name=account.name if account else None,
                account_type=account.account_type.value if account else None,
                debit=line.debit,
                credit=line.credit,
                memo=line.memo,
                department=line.department,
                project=line.project,
                location=line.location
            ))

        return JournalEntryView(
            id=entry.id,
            tenant_id=entry.tenant_id,
            company_id=entry.company_id,
            entry_date=entry.entry_date,
            memo=entry.memo,
            reference=entry.reference,
            status=entry.status.value,
            posted_at=entry.posted_at,
            reversed_by=entry.reversed_by,
            reverses=entry.reverses,
            total_debit=entry.total_debit,
            total_credit=entry.total_credit,
            lines=line_views
        )

    def _build_lines(self, entry_id: str, tenant_id: str, company_id: str,
                     raw_lines: Iterable[Any]) -> List[JournalLine]:
        """Validate line inputs, round to cents and absorb a one-cent residual"""
        raw_lines = list(raw_lines)
        if len(raw_lines) < 2:
            raise TooFewLinesError(
                "Journal entry must have at least two lines", line_count=len(raw_lines)
            )

        lines = []
        raw_debit = raw_credit = ZERO
        for index, raw in enumerate(raw_lines):
            account_id = _line_field(raw, 'account_id')
            unrounded_debit = to_decimal(_line_field(raw, 'debit') or ZERO)
            unrounded_credit = to_decimal(_line_field(raw, 'credit') or ZERO)
            raw_debit += unrounded_debit
            raw_credit += unrounded_credit
            debit = quantize_cents(unrounded_debit)
            credit = quantize_cents(unrounded_credit)

            if debit < 0 or credit < 0:
                raise InvalidJournalLineError(
                    f"Line {index + 1}: amounts must not be negative", line=index + 1
                )
            if debit == 0 and credit == 0:
                raise InvalidJournalLineError(
                    f"Line {index + 1}: line must have a debit or credit amount", line=index + 1
                )

            account = self.accounts.get_account(account_id) if account_id else None
            if not account or account.tenant_id != tenant_id or account.company_id != company_id:
                raise InvalidJournalLineError(
                    f"Line {index + 1}: account {account_id} not found", line=index + 1,
                    account_id=account_id
                )
            if not account.is_active:
                raise InvalidJournalLineError(
                    f"Line {index + 1}: account {account.code} is inactive", line=index + 1,
                    account_id=account_id
                )

            lines.append(JournalLine(
                id=str(uuid.uuid4()),
                entry_id=entry_id,
                account_id=account_id,
                debit=debit,
                credit=credit,
                memo=_line_field(raw, 'memo'),
                department=_line_field(raw, 'department'),
                project=_line_field(raw, 'project'),
                location=_line_field(raw, 'location')
            ))

        self._auto_balance(lines, raw_debit, raw_credit)
        return lines

    def _auto_balance(self, lines: List[JournalLine], raw_debit: Decimal,
                      raw_credit: Decimal) -> None:
        """
        Absorb the cent residual of rounded lines onto the last line

        The tolerance applies to the unrounded totals.
        """
        if abs(quantize_cents(raw_debit - raw_credit)) > self.balance_tolerance:
            raise UnbalancedEntryError(quantize_cents(raw_debit), quantize_cents(raw_credit))

        total_debit = sum((line.debit for line in lines), ZERO)
        total_credit = sum((line.credit for line in lines), ZERO)
        residual = total_debit - total_credit
        if residual == 0:
            return

        last = lines[-1]
        if last.is_debit:
            last.debit = last.debit - residual
        else:
            last.credit = last.credit + residual

        if last.debit < 0 or last.credit < 0 or (last.debit == 0 and last.credit == 0):
            raise UnbalancedEntryError(total_debit, total_credit)

        self.logger.debug(
            "Absorbed rounding residual %s onto line %s", residual, last.id
        )

    def _save_entry(self, entry: JournalEntry) -> None:
        """Save journal entry to storage"""
        self.storage.save(self.table_name, entry.id, entry.to_dict())
