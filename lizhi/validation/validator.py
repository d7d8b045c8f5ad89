"""
Two-Stage Validation

DESIGN DECISION: Records are checked against the current accounts
before they are written.

STAGE 1 - REFERENCE VALIDATION:
- Transfer destination exists and holds cash
- Asset purchase target exists and is tradable
- Source account is known
- Catches records replay would have to skip

STAGE 2 - SEMANTIC VALIDATION:
- Future date detection
- Zero amount detection
- Only runs if stage 1 found no errors

IMPORTANT: Validation NEVER silently fixes issues.
It reports them; the engine rejects records with error-level issues
and passes warnings back to the caller.
"""

from datetime import date, timedelta
from typing import Callable, Iterable, Optional

from lizhi.config import AppSettings, get_settings
from lizhi.models.ledger import Account, StockLot, Transaction, TransactionType
from lizhi.models.reports import ValidationIssue, ValidationResult


class TransactionValidator:
    """
    Validates transactions and stock lots against a set of accounts.
    """

    def __init__(
        self,
        settings: Optional[AppSettings] = None,
        clock: Optional[Callable[[], date]] = None,
    ):
        """
        Args:
            settings: App settings (future-date tolerance)
            clock: Returns today's date; defaults to date.today
        """
        self._settings = settings or get_settings().app
        self._clock = clock or date.today

    def _validate_references(
        self,
        tx: Transaction,
        by_code: dict[str, Account],
        by_id: dict,
    ) -> list[ValidationIssue]:
        """
        Stage 1: Reference validation.

        Missing or wrong-kind destinations and targets are errors.
        An unknown source account is only a warning: the record is
        kept and replay skips it until the account exists.
        """
        issues = []

        if tx.source_account:
            source = by_code.get(tx.source_account)
            if source is None:
                issues.append(ValidationIssue(
                    field="source_account",
                    issue_type="unknown_reference",
                    message=f"No account with code '{tx.source_account}'",
                    severity="warning",
                    suggested_fix="Create the account or correct the code; balances skip this transaction until then",
                ))
            elif source.is_tradable:
                issues.append(ValidationIssue(
                    field="source_account",
                    issue_type="invalid_reference",
                    message=f"Account '{tx.source_account}' is a tradable asset, not a money account",
                    severity="warning",
                    suggested_fix="Record trades as stock lots instead",
                ))

        if tx.type == TransactionType.TRANSFER:
            destination = by_code.get(tx.destination_account)
            if destination is None:
                issues.append(ValidationIssue(
                    field="destination_account",
                    issue_type="missing_reference",
                    message=f"No account with code '{tx.destination_account}'",
                    severity="error",
                ))
            elif destination.is_tradable:
                issues.append(ValidationIssue(
                    field="destination_account",
                    issue_type="invalid_reference",
                    message=f"Account '{tx.destination_account}' is a tradable asset",
                    severity="error",
                    suggested_fix="Use an Asset Purchase to buy units",
                ))

        if tx.type == TransactionType.ASSET_PURCHASE:
            target = by_id.get(tx.target_asset_id)
            if target is None:
                issues.append(ValidationIssue(
                    field="target_asset_id",
                    issue_type="missing_reference",
                    message=f"No asset with id {tx.target_asset_id}",
                    severity="error",
                ))
            elif not target.is_tradable:
                issues.append(ValidationIssue(
                    field="target_asset_id",
                    issue_type="invalid_reference",
                    message=f"'{target.name}' is a {target.type.value} account and holds no units",
                    severity="error",
                    suggested_fix="Use a Transfer to move money between cash accounts",
                ))

        return issues

    def _validate_semantic(self, tx: Transaction) -> list[ValidationIssue]:
        """
        Stage 2: Semantic validation.

        Checks:
        - Date not far in the future
        - Non-zero amount
        """
        issues = []

        today = self._clock()
        max_future_date = today + timedelta(days=self._settings.future_date_tolerance_days)
        if tx.occurred_on > max_future_date:
            issues.append(ValidationIssue(
                field="occurred_on",
                issue_type="future_date",
                message=f"Transaction date ({tx.occurred_on}) is far in the future",
                severity="warning",
                suggested_fix="Check the year",
            ))

        if tx.amount == 0:
            issues.append(ValidationIssue(
                field="amount",
                issue_type="zero_amount",
                message="Transaction amount is zero",
                severity="warning",
            ))

        return issues

    def validate(
        self,
        tx: Transaction,
        accounts: Iterable[Account],
    ) -> ValidationResult:
        """
        Run both stages against the given accounts.

        Returns:
            ValidationResult with all issues found
        """
        accounts = list(accounts)
        by_code = {account.code: account for account in accounts if account.code}
        by_id = {account.id: account for account in accounts}

        issues = self._validate_references(tx, by_code, by_id)
        if not any(issue.severity == "error" for issue in issues):
            issues.extend(self._validate_semantic(tx))

        return ValidationResult(transaction_id=tx.id, issues=issues)

    def validate_lot(
        self,
        lot: StockLot,
        accounts: Iterable[Account],
    ) -> ValidationResult:
        """A lot must belong to an existing tradable asset."""
        issues = []
        asset = next((a for a in accounts if a.id == lot.asset_id), None)
        if asset is None:
            issues.append(ValidationIssue(
                field="asset_id",
                issue_type="missing_reference",
                message=f"No asset with id {lot.asset_id}",
                severity="error",
            ))
        elif not asset.is_tradable:
            issues.append(ValidationIssue(
                field="asset_id",
                issue_type="invalid_reference",
                message=f"'{asset.name}' is a {asset.type.value} account and cannot hold lots",
                severity="error",
            ))
        return ValidationResult(transaction_id=lot.id, issues=issues)

    def get_user_friendly_summary(self, result: ValidationResult) -> str:
        """Plain-text summary of a validation result."""
        if not result.issues:
            return "All checks passed."

        lines = []
        errors = [issue for issue in result.issues if issue.severity == "error"]
        if errors:
            lines.append("The record was not saved:")
            for issue in errors:
                lines.append(f"   - {issue.message}")
                if issue.suggested_fix:
                    lines.append(f"     {issue.suggested_fix}")

        if result.warnings:
            if lines:
                lines.append("")
            lines.append("Please verify the following:")
            for warning in result.warnings:
                lines.append(f"   - {warning}")

        return "\n".join(lines)
