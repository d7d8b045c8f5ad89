"""
Recurring Bill Scheduler

Turns subscription rules into due Expense transactions.

Each rule carries two dates:
- anchor_date: the user-set first bill, never modified here
- runner_date: the next-due cursor, advanced once per materialized bill

DESIGN DECISION: The next due date is the runner plus one cycle, so a
runner the user moved off the anchor's grid stays where they put it.
Monthly and yearly steps take the day of month from the anchor,
clamped to the target month, so a rule anchored on Jan 31 yields
Feb 28 (or 29), Mar 31, Apr 30 ... and never drifts to the 28th.

The scheduler is pure: it computes dates and builds transactions but
never touches storage. The orchestrator persists the results.
"""

import calendar
from datetime import date, timedelta
from typing import Optional

import structlog

from lizhi.config import SchedulerSettings, get_settings
from lizhi.models.ledger import (
    BillingCycle,
    Subscription,
    Transaction,
    TransactionCategory,
    TransactionSource,
    TransactionType,
)
from lizhi.models.reports import DueBills


logger = structlog.get_logger(__name__)


def add_months(start: date, months: int) -> date:
    """Add calendar months, clamping the day to the end of the target month."""
    year, month_index = divmod(start.month - 1 + months, 12)
    year += start.year
    month = month_index + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def roll_to_weekday(day: date) -> date:
    """Step forward one day at a time until the date is Monday-Friday."""
    while day.weekday() >= 5:
        day += timedelta(days=1)
    return day


class RecurringBillScheduler:
    """
    Due-date state machine for subscription rules.

    Unrecognized cycle values behave as Monthly.
    """

    def __init__(self, settings: Optional[SchedulerSettings] = None):
        self._settings = settings or get_settings().scheduler

    @property
    def max_catchup_iterations(self) -> int:
        return self._settings.max_catchup_iterations

    # =========================================================================
    # DATE ARITHMETIC
    # =========================================================================

    def _cycle(self, rule: Subscription) -> BillingCycle:
        if not rule.has_known_cycle:
            logger.warning(
                "unknown_billing_cycle",
                subscription_id=str(rule.id),
                cycle=rule.cycle,
                treated_as=BillingCycle.MONTHLY.value,
            )
        return rule.billing_cycle

    @staticmethod
    def occurrence(
        start: date,
        cycle: BillingCycle,
        n: int,
        day_of_month: Optional[int] = None,
    ) -> date:
        """
        Raw due date n cycles after `start`.

        Monthly and yearly steps land on `day_of_month` (default: the
        start's day), clamped to the length of the target month.
        """
        if cycle == BillingCycle.WEEKLY:
            return start + timedelta(weeks=n)
        months = 12 * n if cycle == BillingCycle.YEARLY else n
        target = add_months(start.replace(day=1), months)
        last_day = calendar.monthrange(target.year, target.month)[1]
        return target.replace(day=min(day_of_month or start.day, last_day))

    @staticmethod
    def _cycles_between(start: date, cycle: BillingCycle, day: date) -> int:
        """Lower estimate of whole cycles from start to day."""
        if cycle == BillingCycle.WEEKLY:
            return (day - start).days // 7
        months = (day.year - start.year) * 12 + day.month - start.month
        if cycle == BillingCycle.YEARLY:
            return months // 12
        return months

    @staticmethod
    def _on_anchor_slot(anchor: date, cycle: BillingCycle, day: date) -> bool:
        if cycle == BillingCycle.WEEKLY:
            return (day - anchor).days % 7 == 0
        if cycle == BillingCycle.YEARLY and day.month != anchor.month:
            return False
        return day.day == min(anchor.day, calendar.monthrange(day.year, day.month)[1])

    def _unrolled(self, rule: Subscription, cycle: BillingCycle, runner: date) -> date:
        """
        Raw due date behind a runner.

        A Monday runner of a weekdays-only rule may be a Saturday or
        Sunday due date rolled forward; stepping from the raw date keeps
        a month-end bill from skipping the following month.
        """
        if not rule.weekdays_only or runner.weekday() != 0:
            return runner
        for back in (2, 1):
            raw = runner - timedelta(days=back)
            if self._on_anchor_slot(rule.anchor_date, cycle, raw):
                return raw
        return runner

    def _next_after(self, rule: Subscription, runner: date, after: date) -> date:
        """First raw due date stepped from `runner` that is later than `after`."""
        cycle = self._cycle(rule)
        start = self._unrolled(rule, cycle, runner)
        day_of_month = rule.anchor_date.day
        n = max(1, self._cycles_between(start, cycle, after) - 1)
        candidate = self.occurrence(start, cycle, n, day_of_month)
        while candidate <= after:
            n += 1
            candidate = self.occurrence(start, cycle, n, day_of_month)
        return candidate

    def _adjust(self, rule: Subscription, day: date) -> date:
        return roll_to_weekday(day) if rule.weekdays_only else day

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def advance(self, rule: Subscription, runner: Optional[date] = None) -> date:
        """
        Next runner date after `runner` (defaults to the rule's runner).

        The result is always strictly later than the runner it
        advances from.
        """
        current = runner or rule.runner_date
        return self._adjust(rule, self._next_after(rule, current, current))

    def effective_next_date(self, rule: Subscription, today: date) -> date:
        """
        Next due date for display. Does not modify the rule.

        A runner still in the future is returned as is (weekday
        corrected). An overdue runner is stepped forward past today,
        skipping the elapsed cycles in one jump.
        """
        runner = rule.runner_date
        if runner > today:
            return self._adjust(rule, runner)

        return self._adjust(rule, self._next_after(rule, runner, today))

    def build_bill(self, rule: Subscription, due_on: date) -> Transaction:
        """Materialize one due bill as a settled Expense."""
        return Transaction(
            amount=rule.amount,
            type=TransactionType.EXPENSE,
            category=TransactionCategory.SURVIVAL,
            source=TransactionSource.SPENDING,
            occurred_on=due_on,
            currency=rule.currency,
            subcategory=self._settings.bill_subcategory,
            tags=["Subscription", rule.name],
            source_account=rule.source_account,
            subscription_id=rule.id,
        )

    def due_bills(self, rule: Subscription, today: date) -> DueBills:
        """
        Bills a rule owes up to and including today.

        At most `max_catchup_iterations` bills are produced per call;
        any excess stays overdue for the next pass and is flagged with
        `truncated`.
        """
        runner = rule.runner_date
        if not rule.is_active:
            return DueBills(subscription_id=rule.id, next_runner_date=runner)

        bills: list[Transaction] = []
        while runner <= today and len(bills) < self.max_catchup_iterations:
            bills.append(self.build_bill(rule, runner))
            runner = self.advance(rule, runner)

        truncated = runner <= today
        if truncated:
            logger.warning(
                "schedule_truncated",
                subscription_id=str(rule.id),
                cap=self.max_catchup_iterations,
                next_runner_date=runner.isoformat(),
            )

        return DueBills(
            subscription_id=rule.id,
            transactions=bills,
            next_runner_date=runner,
            truncated=truncated,
        )
