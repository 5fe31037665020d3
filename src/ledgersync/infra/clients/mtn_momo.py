"""Mobile-money platform client (MTN MoMo-style REST API)."""

from __future__ import annotations

import asyncio
import base64
from datetime import datetime
import os
import threading
import time

from pydantic import Field

from ledgersync.infra.clients.base import (
    CredentialsRef,
    JsonHttpClient,
    PlatformBaseModel,
    TransactionPage,
)
from ledgersync.models.sync import DateRange, Platform, RawTransactionRecord
from ledgersync.tools.sync.errors import DataError, PlatformClientError

DEFAULT_MTN_BASE_URL = "https://sandbox.momodeveloper.mtn.com"
PAGE_SIZE = 100


class MomoParty(PlatformBaseModel):
    party_id_type: str = Field(default="MSISDN", alias="partyIdType")
    party_id: str = Field(alias="partyId")
    name: str | None = None


class MomoTransactionModel(PlatformBaseModel):
    financial_transaction_id: str = Field(alias="financialTransactionId")
    external_id: str | None = Field(default=None, alias="externalId")
    amount: str
    currency: str = "GHS"
    created_at: datetime = Field(alias="createdAt")
    status: str = "SUCCESSFUL"
    payer: MomoParty | None = None
    payee: MomoParty | None = None
    payer_message: str | None = Field(default=None, alias="payerMessage")
    payee_note: str | None = Field(default=None, alias="payeeNote")

    def to_record(self, msisdn: str) -> RawTransactionRecord:
        try:
            magnitude = abs(float(self.amount))
        except ValueError as e:
            raise DataError(
                f"Invalid amount {self.amount!r} for {self.financial_transaction_id}"
            ) from e

        outgoing = self.payer is not None and self.payer.party_id == msisdn
        counterparty_party = self.payee if outgoing else self.payer
        narration = self.payer_message or self.payee_note or "Mobile money transaction"
        return RawTransactionRecord(
            platform_transaction_id=self.financial_transaction_id,
            amount=-magnitude if outgoing else magnitude,
            currency=self.currency.upper(),
            timestamp=self.created_at,
            narration=narration,
            counterparty=counterparty_party.name if counterparty_party else None,
        )


class MomoTransactionsResponse(PlatformBaseModel):
    transactions: list[MomoTransactionModel] = Field(default_factory=list)
    next_offset: int | None = Field(default=None, alias="nextOffset")


class MomoAccountHolderStatus(PlatformBaseModel):
    result: bool


class MomoTokenResponse(PlatformBaseModel):
    access_token: str
    expires_in: int = 3600


class MtnMomoClient(JsonHttpClient):
    platform = Platform.MOBILE_MONEY

    def __init__(
        self,
        *,
        subscription_key: str,
        api_user: str,
        api_key: str,
        target_environment: str = "sandbox",
        base_url: str = DEFAULT_MTN_BASE_URL,
        timeout_seconds: float = 30.0,
    ) -> None:
        super().__init__(base_url=base_url, timeout_seconds=timeout_seconds)
        self._subscription_key = subscription_key
        self._api_user = api_user
        self._api_key = api_key
        self._target_environment = target_environment
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    @classmethod
    def from_env(cls) -> MtnMomoClient:
        """Construct a client from the MTN_MOMO_* environment variables."""
        return cls(
            subscription_key=cls._getenv_or_die("MTN_MOMO_SUBSCRIPTION_KEY"),
            api_user=cls._getenv_or_die("MTN_MOMO_API_USER"),
            api_key=cls._getenv_or_die("MTN_MOMO_API_KEY"),
            target_environment=os.getenv("MTN_MOMO_TARGET_ENVIRONMENT", "sandbox"),
            base_url=os.getenv("MTN_MOMO_BASE_URL", DEFAULT_MTN_BASE_URL),
        )

    @staticmethod
    def _getenv_or_die(name: str) -> str:
        value = os.getenv(name)
        if not value:
            raise PlatformClientError(f"Missing required environment variable: {name}")
        return value

    def _access_token(self) -> str:
        with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token
            basic = base64.b64encode(
                f"{self._api_user}:{self._api_key}".encode()
            ).decode("ascii")
            resp = MomoTokenResponse.parse(
                self._request(
                    "POST",
                    "/collection/token/",
                    headers={
                        "Authorization": f"Basic {basic}",
                        "Ocp-Apim-Subscription-Key": self._subscription_key,
                    },
                    payload={},
                )
            )
            self._token = resp.access_token
            # Refresh a minute early.
            self._token_expires_at = time.monotonic() + max(resp.expires_in - 60, 0)
            return self._token

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._access_token()}",
            "Ocp-Apim-Subscription-Key": self._subscription_key,
            "X-Target-Environment": self._target_environment,
        }

    @staticmethod
    def _msisdn(credentials: CredentialsRef) -> str:
        if not credentials.phone_number:
            raise DataError("Mobile money account has no phone number")
        return credentials.phone_number.lstrip("+")

    def _validate_sync(self, credentials: CredentialsRef) -> bool:
        msisdn = self._msisdn(credentials)
        try:
            body = self._request(
                "GET",
                f"/collection/v1_0/accountholder/msisdn/{msisdn}/active",
                headers=self._headers(),
            )
        except PlatformClientError as e:
            if e.status_code in (401, 403, 404):
                return False
            raise
        return MomoAccountHolderStatus.parse(body).result

    async def validate_credentials(self, credentials: CredentialsRef) -> bool:
        return await asyncio.to_thread(self._validate_sync, credentials)

    def _fetch_sync(
        self,
        credentials: CredentialsRef,
        date_range: DateRange,
        offset: int,
    ) -> TransactionPage:
        msisdn = self._msisdn(credentials)
        body = self._request(
            "GET",
            "/collection/v2_0/transactions",
            headers={**self._headers(), "X-Reference-Id": credentials.reference_id},
            params={
                "msisdn": msisdn,
                "from": date_range.start.isoformat(),
                "to": date_range.end.isoformat(),
                "offset": str(offset),
                "limit": str(PAGE_SIZE),
            },
        )
        resp = MomoTransactionsResponse.parse(body)
        records = [
            txn.to_record(msisdn)
            for txn in resp.transactions
            if txn.status.upper() == "SUCCESSFUL"
        ]
        next_cursor = str(resp.next_offset) if resp.next_offset is not None else None
        return TransactionPage(records=records, next_cursor=next_cursor)

    async def fetch_transactions(
        self,
        credentials: CredentialsRef,
        date_range: DateRange,
        *,
        cursor: str | None = None,
    ) -> TransactionPage:
        offset = int(cursor) if cursor else 0
        return await asyncio.to_thread(
            self._fetch_sync, credentials, date_range, offset
        )
