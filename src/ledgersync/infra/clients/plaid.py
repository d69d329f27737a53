from __future__ import annotations

from dataclasses import dataclass, field
import json
import os
from typing import Any, Literal, Self, cast
import urllib.error
import urllib.request

from pydantic import BaseModel, Field

from ledgersync.models.transaction import ProviderRecord, RemovedTransaction

PlaidEnv = Literal["sandbox", "development", "production"]

MUTATION_DURING_PAGINATION = "TRANSACTIONS_SYNC_MUTATION_DURING_PAGINATION"

PLAID_ENV_MAP: dict[PlaidEnv, str] = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}


class PlaidClientError(Exception):
    """Base error for Plaid client failures.

    Carries the provider's error code/type when the failure came back as a
    Plaid error object, so callers can surface a provider-specific reason.
    """

    def __init__(
        self,
        message: str,
        *,
        error_code: str | None = None,
        error_type: str | None = None,
        status_code: int | None = None,
        display_message: str | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.error_type = error_type
        self.status_code = status_code
        self.display_message = display_message


class MutationDuringPaginationError(PlaidClientError):
    """The feed changed while a multi-page /transactions/sync was in progress."""


class PlaidBaseModel(BaseModel):
    """Shared base for Plaid response models with a short parse alias."""

    @classmethod
    def parse(cls, data: Any) -> Self:
        return cls.model_validate(data)


class PlaidErrorBody(PlaidBaseModel):
    error_code: str | None = None
    error_type: str | None = None
    error_message: str | None = None
    display_message: str | None = None


class TransactionsSyncResponse(PlaidBaseModel):
    # Records stay raw here; they are validated one at a time when applied
    added: list[dict[str, Any]] = Field(default_factory=list)
    modified: list[dict[str, Any]] = Field(default_factory=list)
    removed: list[RemovedTransaction] = Field(default_factory=list)
    next_cursor: str | None = None
    has_more: bool = False

    def to_page(self, *, fallback_cursor: str | None) -> TransactionsSyncPage:
        return TransactionsSyncPage(
            added=list(self.added),
            modified=list(self.modified),
            removed=self.removed,
            next_cursor=self.next_cursor or fallback_cursor,
            has_more=self.has_more,
        )


@dataclass
class TransactionsSyncPage:
    """One page of the incremental transactions feed."""

    added: list[ProviderRecord] = field(default_factory=list)
    modified: list[ProviderRecord] = field(default_factory=list)
    removed: list[RemovedTransaction] = field(default_factory=list)
    next_cursor: str | None = None
    has_more: bool = False


def error_from_response(status_code: int, body: str) -> PlaidClientError:
    """Build the most specific error for a non-2xx Plaid response."""
    try:
        payload = PlaidErrorBody.parse(json.loads(body))
    except (json.JSONDecodeError, ValueError):
        return PlaidClientError(
            f"Plaid API error ({status_code}): {body}", status_code=status_code
        )

    message = (
        f"Plaid API error ({status_code}) {payload.error_code}: "
        f"{payload.error_message or body}"
    )
    error_cls = (
        MutationDuringPaginationError
        if payload.error_code == MUTATION_DURING_PAGINATION
        else PlaidClientError
    )
    return error_cls(
        message,
        error_code=payload.error_code,
        error_type=payload.error_type,
        status_code=status_code,
        display_message=payload.display_message,
    )


class PlaidClient:
    def __init__(
        self,
        *,
        client_id: str,
        secret: str,
        env: PlaidEnv = "sandbox",
        timeout_seconds: float = 30.0,
    ) -> None:
        self._client_id = client_id
        self._secret = secret
        self._env = env
        self._timeout_seconds = timeout_seconds

    @property
    def env(self) -> PlaidEnv:
        return self._env

    @classmethod
    def from_env(cls) -> PlaidClient:
        """Construct a PlaidClient from environment variables.

        Required:
        - PLAID_CLIENT_ID
        - PLAID_ENV (defaults to sandbox)
        - PLAID_<ENV>_SECRET (e.g. PLAID_SANDBOX_SECRET)
        """
        env_str = os.getenv("PLAID_ENV", "sandbox").lower()
        if env_str not in PLAID_ENV_MAP:
            raise PlaidClientError(
                f"Invalid PLAID_ENV={env_str!r}. "
                "Expected one of: sandbox, development, production."
            )
        env: PlaidEnv = env_str  # type: ignore[assignment]

        client_id = cls._getenv_or_die("PLAID_CLIENT_ID")
        secret = cls._getenv_or_die(f"PLAID_{env.upper()}_SECRET")
        return cls(client_id=client_id, secret=secret, env=env)

    @staticmethod
    def _getenv_or_die(name: str) -> str:
        value = os.getenv(name)
        if not value:
            raise PlaidClientError(f"Missing required environment variable: {name}")
        return value

    def _base_url(self) -> str:
        try:
            return PLAID_ENV_MAP[self._env]
        except KeyError as e:
            raise PlaidClientError(
                f"Unsupported Plaid environment: {self._env!r}"
            ) from e

    def _parse_json_response(self, body: str) -> dict[str, Any]:
        try:
            return cast(dict[str, Any], json.loads(body))
        except json.JSONDecodeError as e:
            raise PlaidClientError(
                f"Failed to parse Plaid response as JSON: {e}: {body}"
            ) from e

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = self._base_url().rstrip("/") + path
        data = json.dumps(
            {"client_id": self._client_id, "secret": self._secret, **payload}
        ).encode("utf-8")
        req = urllib.request.Request(  # noqa: S310
            url,
            data=data,
            headers={"Content-Type": "application/json"},
            method="POST",
        )

        try:
            with urllib.request.urlopen(  # noqa: S310 - external HTTPS
                req, timeout=self._timeout_seconds
            ) as resp:
                body = resp.read().decode("utf-8")
        except urllib.error.HTTPError as e:  # pragma: no cover - network-dependent
            err_body = e.read().decode("utf-8", "ignore")
            raise error_from_response(e.code, err_body) from e
        except urllib.error.URLError as e:  # pragma: no cover - network-dependent
            raise PlaidClientError(f"Network error calling Plaid API: {e}") from e

        return self._parse_json_response(body)

    def sync_transactions(
        self,
        access_token: str,
        *,
        cursor: str | None = None,
        count: int = 500,
    ) -> TransactionsSyncPage:
        """Thin wrapper around Plaid's /transactions/sync endpoint.

        Raises:
            MutationDuringPaginationError: the feed changed mid-pagination and
                the caller must restart from the first cursor of this update.
            PlaidClientError: any other provider or transport failure.
        """
        payload: dict[str, Any] = {
            "access_token": access_token,
            "count": count,
        }
        if cursor is not None:
            payload["cursor"] = cursor

        resp = TransactionsSyncResponse.parse(self._post("/transactions/sync", payload))
        return resp.to_page(fallback_cursor=cursor)
