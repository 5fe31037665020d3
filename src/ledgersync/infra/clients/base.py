from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import json
from typing import Any, Protocol, Self, cast
import urllib.error
import urllib.parse
import urllib.request

from pydantic import BaseModel, ValidationError

from ledgersync.models.sync import (
    DateRange,
    LinkedAccount,
    Platform,
    RawTransactionRecord,
)
from ledgersync.tools.sync.errors import DataError, PlatformClientError


@dataclass(frozen=True, slots=True)
class CredentialsRef:
    """Opaque platform credentials for one linked account."""

    reference_id: str = field(repr=False)
    phone_number: str | None = field(default=None, repr=False)

    @classmethod
    def for_account(cls, account: LinkedAccount) -> CredentialsRef:
        return cls(reference_id=account.reference_id, phone_number=account.phone_number)


@dataclass(frozen=True, slots=True)
class TransactionPage:
    records: list[RawTransactionRecord]
    next_cursor: str | None = None

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None


class PlatformClient(Protocol):
    """Fetch-and-parse boundary for one upstream platform.

    Implementations raise ``PlatformClientError`` (with ``status_code`` when
    the upstream answered) or ``DataError`` for unparseable payloads.
    """

    platform: Platform

    async def validate_credentials(self, credentials: CredentialsRef) -> bool: ...

    async def fetch_transactions(
        self,
        credentials: CredentialsRef,
        date_range: DateRange,
        *,
        cursor: str | None = None,
    ) -> TransactionPage: ...


class PlatformBaseModel(BaseModel):
    """Shared base for upstream response models with a short parse alias."""

    @classmethod
    def parse(cls, data: Any) -> Self:
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise DataError(f"Unexpected {cls.__name__} payload: {e}") from e


class JsonHttpClient:
    """Minimal JSON-over-HTTPS transport shared by the platform clients."""

    def __init__(self, *, base_url: str, timeout_seconds: float = 30.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds

    def _parse_json_response(self, body: str) -> dict[str, Any]:
        try:
            parsed = json.loads(body) if body else {}
        except json.JSONDecodeError as e:
            raise DataError(f"Failed to parse response as JSON: {e}") from e
        if not isinstance(parsed, dict):
            raise DataError(f"Expected a JSON object, got {type(parsed).__name__}")
        return cast(dict[str, Any], parsed)

    def _request(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = self._base_url + path
        if params:
            url = url + "?" + urllib.parse.urlencode(params)
        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        req = urllib.request.Request(  # noqa: S310
            url,
            data=data,
            headers={"Content-Type": "application/json", **(headers or {})},
            method=method,
        )

        try:
            with urllib.request.urlopen(  # noqa: S310 - external HTTPS
                req, timeout=self._timeout_seconds
            ) as resp:
                body = resp.read().decode("utf-8")
        except urllib.error.HTTPError as e:  # pragma: no cover - network-dependent
            err_body = e.read().decode("utf-8", "ignore")
            raise PlatformClientError(
                f"{method} {path} failed ({e.code}): {err_body[:500]}",
                status_code=e.code,
            ) from e
        except urllib.error.URLError as e:  # pragma: no cover - network-dependent
            raise PlatformClientError(
                f"Network error calling {path}: {e.reason}"
            ) from e
        except TimeoutError as e:  # pragma: no cover - network-dependent
            raise PlatformClientError(f"Timed out calling {path}") from e

        return self._parse_json_response(body)

    async def _request_async(
        self,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        # urllib blocks; run it off the event loop. Cancellation abandons the
        # thread rather than interrupting the socket.
        return await asyncio.to_thread(self._request, method, path, **kwargs)
