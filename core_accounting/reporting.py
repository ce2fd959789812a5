"""
Trial Balance and General Ledger Projections

Read-only projections over posted journal lines. Both POSTED and REVERSED
entries count: a reversed entry was posted, and its mirror entry nets it out.
"""

from decimal import Decimal
from datetime import date
from typing import Dict, List, Optional

from .amounts import ZERO
from .accounts import Account, AccountDirectory
from .audit import AuditTrail, AuditEventType
from .errors import LedgerIntegrityError
from .ledger import JournalEntry, JournalEntryStore, POSTED_STATUSES
from .logging_config import get_logger, log_action
from .schemas import GeneralLedgerAccount, GeneralLedgerLine, TrialBalanceRow, TrialBalanceView


class LedgerProjector:
    """
    Derives trial balances, account balances and general ledger listings
    Balances are always computed from journal lines, never stored
    """

    def __init__(self, ledger: JournalEntryStore, accounts: AccountDirectory,
                 audit_trail: AuditTrail):
        self.ledger = ledger
        self.accounts = accounts
        self.audit_trail = audit_trail
        self.logger = get_logger("core_accounting.reporting")

    def _posted_entries(self, tenant_id: str, company_id: str,
                        start_date: Optional[date] = None,
                        end_date: Optional[date] = None) -> List[JournalEntry]:
        return [
            entry for entry in self.ledger.list_entries(
                tenant_id, company_id, start_date=start_date, end_date=end_date
            )
            if entry.status in POSTED_STATUSES
        ]

    def trial_balance(self, tenant_id: str, company_id: str,
                      as_of: Optional[date] = None) -> TrialBalanceView:
        """
        Sum posted debits and credits per account up to ``as_of`` (inclusive)

        Returns:
            TrialBalanceView with one row per account that has posted lines
        """
        totals: Dict[str, Dict[str, Decimal]] = {}
        for entry in self._posted_entries(tenant_id, company_id, end_date=as_of):
            for line in entry.lines:
                account_totals = totals.setdefault(line.account_id, {'debit': ZERO, 'credit': ZERO})
                account_totals['debit'] += line.debit
                account_totals['credit'] += line.credit

        rows = []
        for account_id, account_totals in totals.items():
            account = self.accounts.get_account(account_id)
            net = account_totals['debit'] - account_totals['credit']
            rows.append(TrialBalanceRow(
                account_id=account_id,
                account_code=account.code if account else "",
                account_name=account.name if account else account_id,
                account_type=account.account_type.value if account else "",
                total_debit=account_totals['debit'],
                total_credit=account_totals['credit'],
                debit_balance=net if net > 0 else ZERO,
                credit_balance=-net if net < 0 else ZERO
            ))
        rows.sort(key=lambda row: (row.account_code, row.account_name))

        total_debit = sum((row.debit_balance for row in rows), ZERO)
        total_credit = sum((row.credit_balance for row in rows), ZERO)
        return TrialBalanceView(
            tenant_id=tenant_id,
            company_id=company_id,
            as_of=as_of,
            rows=rows,
            total_debit=total_debit,
            total_credit=total_credit,
            is_balanced=total_debit == total_credit
        )

    def verify_trial_balance(self, tenant_id: str, company_id: str,
                             as_of: Optional[date] = None) -> TrialBalanceView:
        """
        Trial balance that treats a mismatch as an integrity violation

        Raises:
            LedgerIntegrityError: Total debit balances differ from total credit balances
        """
        view = self.trial_balance(tenant_id, company_id, as_of)
        if view.is_balanced:
            return view

        difference = view.total_debit - view.total_credit
        log_action(
            self.logger, "critical",
            f"Trial balance mismatch for company {company_id}: difference {difference}",
            action="verify_trial_balance", resource=f"company:{company_id}", tenant_id=tenant_id,
            extra={"total_debit": str(view.total_debit), "total_credit": str(view.total_credit)}
        )
        self.audit_trail.log_event(
            event_type=AuditEventType.TRIAL_BALANCE_MISMATCH,
            entity_type="company",
            entity_id=company_id,
            tenant_id=tenant_id,
            metadata={
                "as_of": as_of.isoformat() if as_of else None,
                "total_debit": view.total_debit,
                "total_credit": view.total_credit,
                "difference": difference
            }
        )
        raise LedgerIntegrityError(
            f"Trial balance does not balance: debits={view.total_debit}, "
            f"credits={view.total_credit}",
            total_debit=view.total_debit, total_credit=view.total_credit, difference=difference
        )

    def account_balance(self, account_id: str, as_of: Optional[date] = None) -> Decimal:
        """
        Calculate an account's balance in its normal direction

        Assets and expenses have debit normal balances; liabilities, equity
        and revenue have credit normal balances.
        """
        account = self.accounts.require_account(account_id)
        net = ZERO
        for entry in self._posted_entries(account.tenant_id, account.company_id, end_date=as_of):
            for line in entry.lines:
                if line.account_id == account_id:
                    net += line.net
        return self._normal_balance(account, net)

    def general_ledger(self, tenant_id: str, company_id: str,
                       start_date: Optional[date] = None,
                       end_date: Optional[date] = None,
                       account_id: Optional[str] = None) -> List[GeneralLedgerAccount]:
        """
        Posted lines per account with opening, running and closing balances

        Args:
            tenant_id: Owning tenant
            company_id: Owning company
            start_date: First date listed; earlier lines form the opening balance
            end_date: Last date listed (inclusive)
            account_id: Restrict the listing to one account
        """
        opening: Dict[str, Decimal] = {}
        listed: Dict[str, List] = {}

        for entry in self._posted_entries(tenant_id, company_id, end_date=end_date):
            for line in entry.lines:
                if account_id and line.account_id != account_id:
                    continue
                if start_date and entry.entry_date < start_date:
                    opening[line.account_id] = opening.get(line.account_id, ZERO) + line.net
                else:
                    listed.setdefault(line.account_id, []).append((entry, line))

        result = []
        for ledger_account_id in set(opening) | set(listed):
            account = self.accounts.get_account(ledger_account_id)
            if not account:
                continue
            running = self._normal_balance(account, opening.get(ledger_account_id, ZERO))
            opening_balance = running
            lines = []
            for entry, line in listed.get(ledger_account_id, []):
                running += self._normal_balance(account, line.net)
                lines.append(GeneralLedgerLine(
                    entry_id=entry.id,
                    entry_date=entry.entry_date,
                    memo=entry.memo,
                    reference=entry.reference,
                    line_memo=line.memo,
                    debit=line.debit,
                    credit=line.credit,
                    running_balance=running
                ))
            result.append(GeneralLedgerAccount(
                account_id=account.id,
                account_code=account.code,
                account_name=account.name,
                account_type=account.account_type.value,
                opening_balance=opening_balance,
                closing_balance=running,
                lines=lines
            ))

        result.sort(key=lambda item: item.account_code)
        return result

    @staticmethod
    def _normal_balance(account: Account, net: Decimal) -> Decimal:
        if account.account_type.is_debit_normal:
            return net
        return ZERO - net
