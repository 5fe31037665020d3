"""Bank-aggregation platform client (Mono-style REST API)."""

from __future__ import annotations

from datetime import datetime
import os
from typing import Any

from pydantic import Field

from ledgersync.infra.clients.base import (
    CredentialsRef,
    JsonHttpClient,
    PlatformBaseModel,
    TransactionPage,
)
from ledgersync.models.sync import DateRange, Platform, RawTransactionRecord
from ledgersync.tools.sync.errors import DataError, PlatformClientError

DEFAULT_MONO_BASE_URL = "https://api.withmono.com"


class MonoTransactionModel(PlatformBaseModel):
    id: str = Field(alias="_id")
    amount: int  # minor units
    type: str  # "debit" | "credit"
    narration: str = ""
    date: datetime
    currency: str = "NGN"
    balance: int | None = None
    category: str | None = None
    meta: dict[str, Any] | None = None

    def to_record(self) -> RawTransactionRecord:
        kind = self.type.lower()
        if kind not in {"debit", "credit"}:
            raise DataError(
                f"Unknown Mono transaction type {self.type!r} for {self.id}"
            )
        magnitude = abs(self.amount) / 100
        merchant = (self.meta or {}).get("merchant")
        return RawTransactionRecord(
            platform_transaction_id=self.id,
            amount=-magnitude if kind == "debit" else magnitude,
            currency=self.currency.upper(),
            timestamp=self.date,
            narration=self.narration,
            counterparty=str(merchant) if merchant else None,
        )


class MonoPaging(PlatformBaseModel):
    page: int = 1
    next: str | None = None


class MonoTransactionsResponse(PlatformBaseModel):
    data: list[MonoTransactionModel] = Field(default_factory=list)
    paging: MonoPaging = Field(default_factory=MonoPaging)


class MonoClient(JsonHttpClient):
    platform = Platform.BANK

    def __init__(
        self,
        *,
        secret_key: str,
        base_url: str = DEFAULT_MONO_BASE_URL,
        timeout_seconds: float = 30.0,
    ) -> None:
        super().__init__(base_url=base_url, timeout_seconds=timeout_seconds)
        self._secret_key = secret_key

    @classmethod
    def from_env(cls) -> MonoClient:
        """Construct a MonoClient from MONO_SECRET_KEY and MONO_BASE_URL."""
        secret = os.getenv("MONO_SECRET_KEY")
        if not secret:
            raise PlatformClientError(
                "Missing required environment variable: MONO_SECRET_KEY"
            )
        return cls(
            secret_key=secret,
            base_url=os.getenv("MONO_BASE_URL", DEFAULT_MONO_BASE_URL),
        )

    def _headers(self) -> dict[str, str]:
        return {"mono-sec-key": self._secret_key}

    async def validate_credentials(self, credentials: CredentialsRef) -> bool:
        try:
            await self._request_async(
                "GET",
                f"/accounts/{credentials.reference_id}",
                headers=self._headers(),
            )
        except PlatformClientError as e:
            if e.status_code in (401, 403, 404):
                return False
            raise
        return True

    async def fetch_transactions(
        self,
        credentials: CredentialsRef,
        date_range: DateRange,
        *,
        cursor: str | None = None,
    ) -> TransactionPage:
        page = int(cursor) if cursor else 1
        body = await self._request_async(
            "GET",
            f"/accounts/{credentials.reference_id}/transactions",
            headers=self._headers(),
            params={
                "start": date_range.start.strftime("%d-%m-%Y"),
                "end": date_range.end.strftime("%d-%m-%Y"),
                "paginate": "true",
                "page": str(page),
            },
        )
        resp = MonoTransactionsResponse.parse(body)
        return TransactionPage(
            records=[txn.to_record() for txn in resp.data],
            next_cursor=str(page + 1) if resp.paging.next else None,
        )
