"""Safaricom Daraja (M-Pesa) API integration: OAuth access token and STK push."""
from __future__ import annotations

import asyncio
import base64
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import httpx

from app.config import Settings
from app.services.exceptions import AuthFailure, InvalidPayee, PushPaymentFailure

log = logging.getLogger("uvicorn.error")

OAUTH_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
MIN_TOKEN_MARGIN_SECONDS = 10
# Daraja sandbox tokens live for 3599 seconds; used when expires_in is missing
DEFAULT_TOKEN_TTL_SECONDS = 3599

# 07XXXXXXXX / 01XXXXXXXX (local) or 2547XXXXXXXX / 2541XXXXXXXX (international)
_PHONE_RE = re.compile(r"^(?:254|0)([17]\d{8})$")


def normalize_phone(raw: str | None) -> str:
    """Return the phone number as 254XXXXXXXXX or raise InvalidPayee."""
    phone = re.sub(r"\s+", "", raw or "")
    if phone.startswith("+"):
        phone = phone[1:]
    m = _PHONE_RE.match(phone)
    if not m:
        raise InvalidPayee("Invalid phone number format. Please start with 07, 01, or 254.")
    return f"254{m.group(1)}"


def stk_timestamp(now: datetime | None = None) -> str:
    """Daraja timestamp, YYYYMMDDHHMMSS in local time."""
    return (now or datetime.now()).strftime("%Y%m%d%H%M%S")


def stk_password(shortcode: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode("utf-8")).decode("ascii")


@dataclass(frozen=True)
class CachedToken:
    value: str
    expires_at: float


@dataclass(frozen=True)
class PushPaymentResult:
    request_id: str
    merchant_request_id: str


class DarajaClient:
    """One instance per process. Caches the OAuth token until shortly before it expires.

    clock must be monotonic-like (seconds); transport lets tests plug in httpx.MockTransport.
    """

    def __init__(
        self,
        settings: Settings,
        clock: Callable[[], float] = time.monotonic,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings
        self._clock = clock
        self._transport = transport
        self._token: CachedToken | None = None
        self._token_lock = asyncio.Lock()

    @property
    def base_url(self) -> str:
        return (self.settings.mpesa_base_url or "").rstrip("/")

    @property
    def token_margin(self) -> int:
        return max(MIN_TOKEN_MARGIN_SECONDS, self.settings.mpesa_token_margin_seconds)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.settings.mpesa_timeout_seconds, transport=self._transport)

    def _cached(self) -> str | None:
        if self._token and self._clock() < self._token.expires_at:
            return self._token.value
        return None

    async def get_access_token(self) -> str:
        token = self._cached()
        if token:
            return token
        async with self._token_lock:
            # Another waiter may have refreshed while we were queued on the lock
            token = self._cached()
            if token:
                return token
            self._token = await self._fetch_token()
            return self._token.value

    async def _fetch_token(self) -> CachedToken:
        key = self.settings.mpesa_consumer_key
        secret = self.settings.mpesa_consumer_secret
        if not key or not secret:
            raise AuthFailure("M-Pesa is not configured. Set MPESA_CONSUMER_KEY and MPESA_CONSUMER_SECRET in .env.")
        url = f"{self.base_url}{OAUTH_PATH}"
        try:
            async with self._client() as client:
                r = await client.get(url, params={"grant_type": "client_credentials"}, auth=(key, secret))
        except httpx.HTTPError as e:
            log.error("[M-Pesa] Access token request failed: %s: %s", type(e).__name__, e)
            raise AuthFailure("Could not get Daraja access token. Please check your consumer key and secret.") from e
        if not r.is_success:
            log.error("[M-Pesa] Access token rejected: status=%s body=%s", r.status_code, r.text[:500])
            raise AuthFailure("Could not get Daraja access token. Please check your consumer key and secret.")
        try:
            body = r.json()
        except ValueError:
            body = {}
        access_token = (body or {}).get("access_token")
        if not access_token:
            raise AuthFailure("Daraja did not return an access token.")
        try:
            ttl = int(body.get("expires_in") or DEFAULT_TOKEN_TTL_SECONDS)
        except (TypeError, ValueError):
            ttl = DEFAULT_TOKEN_TTL_SECONDS
        expires_at = self._clock() + ttl - self.token_margin
        log.info("[M-Pesa] Access token refreshed (expires_in=%ss)", ttl)
        return CachedToken(value=access_token, expires_at=expires_at)

    async def initiate_push_payment(self, payee: str, amount: int, reference: str | None = None) -> PushPaymentResult:
        """Send a CustomerPayBillOnline STK push to payee's phone."""
        phone = normalize_phone(payee)
        token = await self.get_access_token()

        shortcode = self.settings.mpesa_shortcode
        timestamp = stk_timestamp()
        body = {
            "BusinessShortCode": shortcode,
            "Password": stk_password(shortcode, self.settings.mpesa_passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": str(amount),
            "PartyA": phone,
            "PartyB": shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self.settings.mpesa_callback_url,
            "AccountReference": (reference or self.settings.mpesa_account_reference)[:12],
            "TransactionDesc": self.settings.mpesa_transaction_desc,
        }
        url = f"{self.base_url}{STK_PUSH_PATH}"
        try:
            async with self._client() as client:
                r = await client.post(url, json=body, headers={"Authorization": f"Bearer {token}"})
        except httpx.HTTPError as e:
            log.error("[M-Pesa] STK push request failed: %s: %s", type(e).__name__, e)
            raise PushPaymentFailure(str(e) or "STK push request failed.") from e

        try:
            payload = r.json()
        except ValueError:
            payload = r.text
        if not r.is_success:
            log.error("[M-Pesa] STK push rejected: status=%s body=%s", r.status_code, str(payload)[:500])
            raise PushPaymentFailure(_error_message(payload), payload=payload)

        data = payload if isinstance(payload, dict) else {}
        request_id = data.get("CheckoutRequestID")
        if not request_id:
            raise PushPaymentFailure("Daraja response did not include a CheckoutRequestID.", payload=payload)
        return PushPaymentResult(
            request_id=request_id,
            merchant_request_id=data.get("MerchantRequestID") or "",
        )


def _error_message(payload) -> str:
    if isinstance(payload, dict):
        return payload.get("errorMessage") or payload.get("ResponseDescription") or str(payload)
    return str(payload or "STK push was rejected.")
