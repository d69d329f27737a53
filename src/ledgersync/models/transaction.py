"""Provider transaction records as delivered by Plaid's /transactions/sync.

Note: This structure mirrors what Plaid's API returns. Fields that only some
institutions populate (transaction_type, transaction_code, payment_meta) are
nullable; older payloads stored with camelCase keys are mapped onto the
snake_case fields by `normalize_legacy_fields` before validation.
"""

from __future__ import annotations

from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

# camelCase spelling -> documented snake_case field
LEGACY_FIELD_ALIASES: dict[str, str] = {
    "transactionId": "transaction_id",
    "accountId": "account_id",
    "merchantName": "merchant_name",
    "originalDescription": "original_description",
    "categoryId": "category_id",
    "transactionType": "transaction_type",
    "transactionCode": "transaction_code",
    "authorizedDate": "authorized_date",
    "authorizedDatetime": "authorized_datetime",
    "isoCurrencyCode": "iso_currency_code",
    "unofficialCurrencyCode": "unofficial_currency_code",
    "merchantEntityId": "merchant_entity_id",
    "logoUrl": "logo_url",
    "personalFinanceCategory": "personal_finance_category",
    "paymentChannel": "payment_channel",
    "paymentMeta": "payment_meta",
    "accountOwner": "account_owner",
    "pendingTransactionId": "pending_transaction_id",
    "checkNumber": "check_number",
}


def normalize_legacy_fields(data: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
    """Map legacy camelCase keys onto documented field names.

    A documented key always wins over its legacy spelling. Returns the
    normalized copy and the legacy keys that were consumed.
    """
    normalized = dict(data)
    used: list[str] = []
    for legacy, field_name in LEGACY_FIELD_ALIASES.items():
        if legacy not in normalized:
            continue
        value = normalized.pop(legacy)
        used.append(legacy)
        if normalized.get(field_name) is None:
            normalized[field_name] = value
    return normalized, used


class ProviderBaseModel(BaseModel):
    """Shared base for provider records with a short parse alias."""

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def parse(cls, data: Any) -> Self:
        return cls.model_validate(data)


class ProviderTransaction(ProviderBaseModel):
    """One added or modified transaction from the provider feed."""

    transaction_id: str
    account_id: str
    amount: float
    date: str
    name: str | None = None
    merchant_name: str | None = None
    original_description: str | None = None
    category: list[str] | None = None
    category_id: str | None = None
    transaction_type: str | None = None  # "place", "digital", "special", "unresolved"
    transaction_code: str | None = None  # European institutions only
    pending: bool = False
    authorized_date: str | None = None
    authorized_datetime: str | None = None
    datetime: str | None = None
    iso_currency_code: str | None = None
    unofficial_currency_code: str | None = None
    merchant_entity_id: str | None = None
    logo_url: str | None = None
    website: str | None = None
    personal_finance_category: dict[str, Any] | None = None
    payment_channel: str | None = None
    payment_meta: dict[str, Any] | None = None
    location: dict[str, Any] | None = None
    counterparties: list[dict[str, Any]] | None = None
    account_owner: str | None = None
    pending_transaction_id: str | None = None
    check_number: str | None = None

    legacy_fields: list[str] = Field(default_factory=list, exclude=True)

    @classmethod
    def from_record(cls, record: ProviderRecord) -> ProviderTransaction:
        """Validate a raw feed record; already-parsed records pass through."""
        if isinstance(record, ProviderTransaction):
            return record
        return cls.parse(record)

    @model_validator(mode="before")
    @classmethod
    def _apply_legacy_shim(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        normalized, used = normalize_legacy_fields(data)
        if used:
            normalized["legacy_fields"] = used
        return normalized

    @property
    def primary_category(self) -> str:
        """Lowercased coarse category, falling back to the personal finance one."""
        if self.category:
            return self.category[0].strip().lower()
        pfc = self.personal_finance_category or {}
        primary = pfc.get("primary")
        if isinstance(primary, str):
            return primary.replace("_", " ").strip().lower()
        return ""

    @property
    def payee_name(self) -> str | None:
        """Merchant or payee name when the institution supplied one."""
        if self.merchant_name:
            return self.merchant_name
        payee = (self.payment_meta or {}).get("payee")
        if isinstance(payee, str) and payee.strip():
            return payee
        for counterparty in self.counterparties or []:
            if counterparty.get("type") == "merchant" and counterparty.get("name"):
                return str(counterparty["name"])
        return None

    @property
    def description(self) -> str:
        return (
            self.name
            or self.merchant_name
            or self.original_description
            or "Plaid Transaction"
        )

    def to_metadata(self) -> dict[str, Any]:
        """Classification-relevant provider fields, camelCase, for audit."""
        return {
            "category": self.category,
            "categoryId": self.category_id,
            "transactionType": self.transaction_type,
            "transactionCode": self.transaction_code,
            "pending": self.pending,
            "authorizedDate": self.authorized_date,
            "authorizedDatetime": self.authorized_datetime,
            "datetime": self.datetime,
            "isoCurrencyCode": self.iso_currency_code,
            "unofficialCurrencyCode": self.unofficial_currency_code,
            "merchantName": self.merchant_name,
            "merchantEntityId": self.merchant_entity_id,
            "logoUrl": self.logo_url,
            "website": self.website,
            "personalFinanceCategory": self.personal_finance_category,
            "location": self.location,
            "counterparties": self.counterparties,
            "paymentChannel": self.payment_channel,
            "paymentMeta": self.payment_meta,
            "accountOwner": self.account_owner,
            "pendingTransactionId": self.pending_transaction_id,
            "checkNumber": self.check_number,
            "rawAmount": self.amount,
        }


# Added/modified records arrive unvalidated so one bad record cannot sink a page
ProviderRecord = ProviderTransaction | dict[str, Any]


def record_field(record: ProviderRecord, field_name: str) -> Any:
    """Read a field from a parsed or raw record, honouring legacy spellings."""
    if isinstance(record, ProviderTransaction):
        return getattr(record, field_name)
    if record.get(field_name) is not None:
        return record[field_name]
    for legacy, documented in LEGACY_FIELD_ALIASES.items():
        if documented == field_name and legacy in record:
            return record[legacy]
    return None


class RemovedTransaction(ProviderBaseModel):
    """A provider tombstone; only the id is guaranteed."""

    transaction_id: str
    account_id: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _apply_legacy_shim(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        normalized, _ = normalize_legacy_fields(data)
        return normalized
