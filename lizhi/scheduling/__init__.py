"""Recurring bill scheduling."""

from lizhi.scheduling.scheduler import RecurringBillScheduler, add_months, roll_to_weekday

__all__ = ["RecurringBillScheduler", "add_months", "roll_to_weekday"]
