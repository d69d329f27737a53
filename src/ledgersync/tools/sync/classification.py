"""Expense / income / transfer classification of provider transactions.

No single provider field is reliable across institutions, so the policy is an
ordered decision table: each rule is a named predicate over the record and
the account kind, evaluated in fixed priority. The first rule that matches
decides between expense and income. Credit-account income is then checked
against credit card payment signatures and turned into a transfer.

Sign conventions differ by account kind:
- deposit accounts: negative = expense, positive = income
- credit accounts: positive = purchase (expense), negative = payment/refund
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
import math

from ledgersync.adapters.db.models import CREDIT_ACCOUNT_TYPES, TransactionType
from ledgersync.models.transaction import ProviderTransaction

CENTS = Decimal("0.01")

# Coarse transaction_type values that are always a purchase
PURCHASE_TRANSACTION_TYPES = frozenset({"place", "digital"})

# transaction_type values that defer to secondary signals
RESIDUAL_TRANSACTION_TYPES = frozenset({"special", "unresolved"})

# Institution transaction codes (European institutions)
EXPENSE_TRANSACTION_CODES = frozenset(
    {
        "purchase",
        "bill payment",
        "bank charge",
        "cashback",
        "direct debit",
        "standing order",
    }
)
INCOME_TRANSACTION_CODES = frozenset({"interest"})
# Direction depends on the account and amount; never decided by the code alone
AMBIGUOUS_TRANSACTION_CODES = frozenset(
    {"transfer", "cash", "atm", "cheque", "adjustment"}
)

INCOME_CATEGORY_KEYWORDS = (
    "deposit",
    "interest",
    "dividend",
    "salary",
    "payroll",
    "income",
    "reimbursement",
    "refund",
)
EXPENSE_CATEGORY_KEYWORDS = (
    "food and drink",
    "shops",
    "gas stations",
    "groceries",
    "restaurants",
    "entertainment",
    "travel",
    "bills",
    "utilities",
    "service",
    "recreation",
    "healthcare",
    "general merchandise",
    "bank fees",
)

CARD_PAYMENT_CODES = frozenset({"payment", "credit"})
CARD_PAYMENT_KEYWORDS = ("payment", "transfer")


class ClassificationError(ValueError):
    """The record cannot be classified (malformed date, amount or id)."""


@dataclass(frozen=True, slots=True)
class Classification:
    """Outcome of classifying one provider record."""

    type: TransactionType
    is_transfer: bool
    amount: Decimal  # always non-negative
    posted_at: date
    description: str
    matched_rule: str


Predicate = Callable[[ProviderTransaction, bool], bool]


@dataclass(frozen=True, slots=True)
class ClassificationRule:
    name: str
    predicate: Predicate
    outcome: TransactionType


def is_credit_account(account_type: str | None) -> bool:
    return (account_type or "").strip().lower() in CREDIT_ACCOUNT_TYPES


def _code(record: ProviderTransaction) -> str:
    return (record.transaction_code or "").strip().lower()


def _txn_type(record: ProviderTransaction) -> str:
    return (record.transaction_type or "").strip().lower()


def _defers_to_secondary(record: ProviderTransaction) -> bool:
    txn_type = _txn_type(record)
    return not txn_type or txn_type in RESIDUAL_TRANSACTION_TYPES


def _category_matches(record: ProviderTransaction, keywords: tuple[str, ...]) -> bool:
    primary = record.primary_category
    return bool(primary) and any(keyword in primary for keyword in keywords)


def _is_income_category(record: ProviderTransaction) -> bool:
    return _category_matches(record, INCOME_CATEGORY_KEYWORDS)


DECISION_TABLE: tuple[ClassificationRule, ...] = (
    ClassificationRule(
        name="purchase_transaction_type",
        predicate=lambda r, _: _txn_type(r) in PURCHASE_TRANSACTION_TYPES,
        outcome="expense",
    ),
    ClassificationRule(
        name="expense_transaction_code",
        predicate=lambda r, _: _defers_to_secondary(r)
        and _code(r) in EXPENSE_TRANSACTION_CODES,
        outcome="expense",
    ),
    ClassificationRule(
        name="income_transaction_code",
        predicate=lambda r, _: _defers_to_secondary(r)
        and _code(r) in INCOME_TRANSACTION_CODES,
        outcome="income",
    ),
    ClassificationRule(
        name="income_category",
        predicate=lambda r, _: _is_income_category(r),
        outcome="income",
    ),
    ClassificationRule(
        name="expense_category",
        predicate=lambda r, _: _category_matches(r, EXPENSE_CATEGORY_KEYWORDS),
        outcome="expense",
    ),
    ClassificationRule(
        name="merchant_present",
        predicate=lambda r, _: r.payee_name is not None and not _is_income_category(r),
        outcome="expense",
    ),
    ClassificationRule(
        name="credit_positive_amount",
        predicate=lambda r, credit: credit and r.amount > 0,
        outcome="expense",
    ),
    ClassificationRule(
        name="credit_negative_amount",
        predicate=lambda r, credit: credit and r.amount < 0,
        outcome="income",
    ),
    ClassificationRule(
        name="deposit_negative_amount",
        predicate=lambda r, credit: not credit and r.amount < 0,
        outcome="expense",
    ),
    ClassificationRule(
        name="deposit_positive_amount",
        predicate=lambda r, credit: not credit and r.amount > 0,
        outcome="income",
    ),
)

# Zero amounts match no sign rule
FALLBACK_RULE = ClassificationRule(
    name="zero_amount", predicate=lambda r, _: True, outcome="expense"
)


def is_card_payment(record: ProviderTransaction, description: str) -> bool:
    """Credit card payment signature: reduces debt rather than earning income."""
    if _code(record) in CARD_PAYMENT_CODES:
        return True
    if record.amount >= 0:
        return False
    primary = record.primary_category
    lowered = description.lower()
    return any(k in primary for k in CARD_PAYMENT_KEYWORDS) or any(
        k in lowered for k in CARD_PAYMENT_KEYWORDS
    )


def match_rule(
    record: ProviderTransaction, account_type: str | None
) -> ClassificationRule:
    """Return the first decision-table rule that matches."""
    credit = is_credit_account(account_type)
    for rule in DECISION_TABLE:
        if rule.predicate(record, credit):
            return rule
    return FALLBACK_RULE


def parse_posted_date(raw: str) -> date:
    """Parse the provider's YYYY-MM-DD date as a calendar date."""
    try:
        return datetime.strptime(raw.strip(), "%Y-%m-%d").date()
    except (ValueError, AttributeError) as e:
        raise ClassificationError(f"Invalid date format from provider: {raw!r}") from e


def magnitude(raw_amount: float) -> Decimal:
    if not math.isfinite(raw_amount):
        raise ClassificationError(f"Non-finite amount from provider: {raw_amount!r}")
    try:
        return Decimal(str(raw_amount)).copy_abs().quantize(CENTS)
    except InvalidOperation as e:
        raise ClassificationError(
            f"Invalid amount from provider: {raw_amount!r}"
        ) from e


def classify(record: ProviderTransaction, account_type: str | None) -> Classification:
    """Classify one provider record for an account of `account_type`.

    Pure and deterministic: no I/O, same input always yields the same output.

    Raises:
        ClassificationError: If the id, date or amount is malformed
    """
    if not record.transaction_id.strip():
        raise ClassificationError("Provider record has an empty transaction_id")

    posted_at = parse_posted_date(record.date)
    amount = magnitude(record.amount)
    description = record.description

    rule = match_rule(record, account_type)
    txn_type: TransactionType = rule.outcome
    matched = rule.name

    if (
        txn_type == "income"
        and is_credit_account(account_type)
        and is_card_payment(record, description)
    ):
        txn_type = "transfer"
        matched = f"{rule.name}+card_payment"

    return Classification(
        type=txn_type,
        is_transfer=txn_type == "transfer",
        amount=amount,
        posted_at=posted_at,
        description=description,
        matched_rule=matched,
    )
