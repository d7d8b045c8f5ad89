"""
Core Ledger Models for Lizhi Ledger

These models define the strict schemas for every record the ledger stores:
- Transaction: one entry in the append-only event log
- Account: a store of value (bank account, stock, crypto, other)
- StockLot: one buy or sell of a tradable asset (cost-basis entry)
- Subscription: a recurring bill rule

DESIGN DECISION: Account balances are DERIVED state.
Nothing outside the reconciliation replay may write `holdings` or a
cash account's `market_value`. The models carry the replay reset point
(`initial_balance` / `initial_holdings`) next to the derived values.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


def normalize_currency(value: str) -> str:
    """Normalize a currency code to upper-case ISO 4217 form."""
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError(f"Currency must be a 3-letter ISO 4217 code, got {value!r}")
    return normalized


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class TransactionType(str, Enum):
    """Direction of a transaction. The amount itself is always non-negative."""
    INCOME = "Income"
    EXPENSE = "Expense"
    TRANSFER = "Transfer"
    ASSET_PURCHASE = "Asset Purchase"


class TransactionCategory(str, Enum):
    """
    High-level spending category.

    Investment expenses are excluded from "burn" in every ratio.
    """
    SURVIVAL = "Survival"          # Rent, groceries (needs)
    MATERIAL = "Material"          # Gadgets, clothes (wants)
    EXPERIENTIAL = "Experiential"  # Travel, dining
    INVESTMENT = "Investment"      # Putting money to work
    UNCATEGORIZED = "Uncategorized"


class TransactionSource(str, Enum):
    """Where income came from. Expenses default to SPENDING."""
    JOB = "Job"
    SIDE_PROJECT = "Side Project"
    INVESTMENT = "Investment"
    GIFT = "Gift"
    SPENDING = "Spending"


class AssetType(str, Enum):
    """Kind of store of value."""
    CASH = "Cash"      # Physical cash, bank accounts
    STOCK = "Stock"    # ETFs, stocks
    CRYPTO = "Crypto"
    OTHER = "Other"


class LotSide(str, Enum):
    """Buy or sell flag of a cost-basis entry."""
    BUY = "Buy"
    SELL = "Sell"


class BillingCycle(str, Enum):
    """Recurrence of a subscription."""
    WEEKLY = "Weekly"
    MONTHLY = "Monthly"
    YEARLY = "Yearly"


TRADABLE_TYPES = frozenset({AssetType.STOCK, AssetType.CRYPTO})
PASSIVE_INCOME_TYPES = frozenset({AssetType.STOCK, AssetType.CRYPTO, AssetType.OTHER})


# =============================================================================
# TRANSACTION
# =============================================================================

class Transaction(BaseModel):
    """
    One entry in the transaction log.

    Immutable by replacement: an edit saves a new version under the same id.
    The amount is a magnitude; `type` gives the direction.

    Reference rules:
    - TRANSFER carries a destination account and no target asset
    - ASSET_PURCHASE carries a target asset (plus units) and no destination
    - INCOME / EXPENSE carry neither
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(
        default_factory=uuid4,
        description="Unique transaction ID"
    )
    amount: Decimal = Field(
        ...,
        ge=0,
        description="Non-negative magnitude; direction comes from type"
    )
    type: TransactionType
    category: TransactionCategory = TransactionCategory.UNCATEGORIZED
    source: TransactionSource = TransactionSource.SPENDING
    occurred_on: date = Field(
        ...,
        description="Date the transaction happened"
    )
    currency: str = Field(
        default="AUD",
        description="Currency of the amount"
    )

    # Display labels
    category_name: str = Field(default="", max_length=100)
    subcategory: str = Field(default="", max_length=100)
    tags: list[str] = Field(default_factory=list)

    # References
    source_account: Optional[str] = Field(
        default=None,
        description="Short code of the account money leaves (or, for income, arrives in)"
    )
    destination_account: Optional[str] = Field(
        default=None,
        description="Short code of the account a transfer credits"
    )
    target_asset_id: Optional[UUID] = Field(
        default=None,
        description="Asset an asset purchase buys"
    )
    units: Optional[Decimal] = Field(default=None, gt=0)
    price_per_unit: Optional[Decimal] = Field(default=None, ge=0)
    fees: Optional[Decimal] = Field(default=None, ge=0)

    # Set when the scheduler materialized this transaction
    subscription_id: Optional[UUID] = None

    @field_validator('currency')
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return normalize_currency(v)

    @field_validator('source_account', 'destination_account')
    @classmethod
    def blank_reference_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None

    @model_validator(mode='after')
    def validate_references(self) -> 'Transaction':
        """Validate that references match the transaction type."""
        if self.type == TransactionType.TRANSFER:
            if not self.destination_account:
                raise ValueError("Transfer requires a destination account")
            if self.target_asset_id is not None:
                raise ValueError("Transfer cannot target an asset")
        elif self.type == TransactionType.ASSET_PURCHASE:
            if self.target_asset_id is None:
                raise ValueError("Asset purchase requires a target asset")
            if self.units is None:
                raise ValueError("Asset purchase requires a unit count")
            if self.destination_account:
                raise ValueError("Asset purchase cannot have a destination account")
        else:
            if self.destination_account or self.target_asset_id is not None:
                raise ValueError(
                    f"{self.type.value} transactions cannot reference a destination or target asset"
                )

        if (
            self.source_account
            and self.destination_account
            and self.source_account == self.destination_account
        ):
            raise ValueError("Source and destination account must differ")

        return self

    @property
    def is_active_income(self) -> bool:
        """All income counts as active income."""
        return self.type == TransactionType.INCOME

    @property
    def is_burn(self) -> bool:
        """Non-investment expense."""
        return (
            self.type == TransactionType.EXPENSE
            and self.category != TransactionCategory.INVESTMENT
        )


# =============================================================================
# ACCOUNT / ASSET
# =============================================================================

class Account(BaseModel):
    """
    A store of value.

    Cash-like accounts: holdings = 1, market_value = balance.
    Tradable assets: holdings = units, market_value = unit price.
    Either way total_value = holdings x market_value.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    code: Optional[str] = Field(
        default=None,
        max_length=32,
        description="Stable short id transactions refer to (e.g. CBA, AMEX)"
    )
    name: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Ticker symbol or account name"
    )
    type: AssetType = AssetType.CASH
    holdings: Decimal = Field(default=Decimal("1"))
    market_value: Decimal = Field(default=Decimal("0"))
    currency: str = "AUD"
    last_updated: datetime = Field(default_factory=datetime.utcnow)

    # Replay reset point
    initial_balance: Decimal = Field(
        default=Decimal("0"),
        description="Opening balance of a cash-like account"
    )
    initial_holdings: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        description="Units held before the first recorded lot"
    )

    # Derived from stock lots during replay
    invested_capital: Decimal = Field(default=Decimal("0"))

    @field_validator('currency')
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return normalize_currency(v)

    @field_validator('code')
    @classmethod
    def blank_code_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None

    @property
    def total_value(self) -> Decimal:
        return self.holdings * self.market_value

    @property
    def is_tradable(self) -> bool:
        return self.type in TRADABLE_TYPES

    @property
    def is_cash_like(self) -> bool:
        return not self.is_tradable

    @property
    def is_passive_income_source(self) -> bool:
        return self.type in PASSIVE_INCOME_TYPES


# =============================================================================
# STOCK LOT
# =============================================================================

class StockLot(BaseModel):
    """
    One buy or sell of a tradable asset.

    `transaction_id` links a lot created from an asset-purchase
    transaction, so editing that transaction updates the same lot
    instead of creating a duplicate.
    """

    id: UUID = Field(default_factory=uuid4)
    asset_id: UUID
    transaction_id: Optional[UUID] = None
    side: LotSide
    units: Decimal = Field(..., gt=0)
    price_per_unit: Decimal = Field(..., ge=0)
    fees: Decimal = Field(default=Decimal("0"), ge=0)
    traded_on: date
    currency: str = "AUD"
    notes: str = Field(default="", max_length=500)

    @field_validator('currency')
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return normalize_currency(v)

    @property
    def total_amount(self) -> Decimal:
        """Total cost for a buy, total proceeds for a sell (fees included)."""
        return self.price_per_unit * self.units + self.fees

    @property
    def signed_units(self) -> Decimal:
        return self.units if self.side == LotSide.BUY else -self.units


# =============================================================================
# SUBSCRIPTION
# =============================================================================

class Subscription(BaseModel):
    """
    A recurring bill rule.

    `anchor_date` is the user-set start and never changes.
    `runner_date` is the next-due cursor the scheduler advances.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1, max_length=200)
    amount: Decimal = Field(..., ge=0)
    currency: str = "AUD"
    cycle: str = Field(
        default=BillingCycle.MONTHLY.value,
        description="Weekly, Monthly or Yearly; anything else behaves as Monthly"
    )
    anchor_date: date
    runner_date: Optional[date] = None
    is_active: bool = True
    weekdays_only: bool = False
    source_account: Optional[str] = None
    notes: str = Field(default="", max_length=1000)
    payment_method: str = Field(default="Card", max_length=50)

    @field_validator('currency')
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return normalize_currency(v)

    @field_validator('source_account')
    @classmethod
    def blank_reference_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None

    @model_validator(mode='after')
    def default_runner_to_anchor(self) -> 'Subscription':
        if self.runner_date is None:
            self.runner_date = self.anchor_date
        return self

    @property
    def billing_cycle(self) -> BillingCycle:
        """Resolved cycle; unrecognized values fall back to Monthly."""
        try:
            return BillingCycle(self.cycle.strip().capitalize())
        except ValueError:
            return BillingCycle.MONTHLY

    @property
    def has_known_cycle(self) -> bool:
        return self.cycle.strip().capitalize() in {c.value for c in BillingCycle}

    @property
    def monthly_cost(self) -> Decimal:
        """Monthly equivalent cost."""
        cycle = self.billing_cycle
        if cycle == BillingCycle.WEEKLY:
            return self.amount * 4
        if cycle == BillingCycle.YEARLY:
            return self.amount / 12
        return self.amount
