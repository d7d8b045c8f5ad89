"""Validation package."""

from lizhi.validation.validator import TransactionValidator

__all__ = ["TransactionValidator"]
