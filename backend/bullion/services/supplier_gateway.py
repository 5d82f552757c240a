"""Platform Gold public v2 API client.

Only the fulfillment subset the checkout needs: quotes, sales orders, order
status / polling / search, and the payment-method and shipping-instruction
lookups.

``/sales-order*`` endpoints take and return JSON arrays (one element per
order); helpers here always send a single element and unwrap the first one.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx

from bullion.config import settings
from bullion.services.errors import SupplierConfigurationError, UpstreamUnavailable
from bullion.services.supplier_token_provider import SupplierTokenProvider
from bullion.utils.logger import logger, supplier_logger

# Supplier limit for customerReferenceNumber / confirmationNumber.
MAX_REFERENCE_LENGTH = 35

_LOOKUP_TTL_SECONDS = 60 * 60  # 1 hour


@dataclass
class Quote:
    handle: str
    amount: Decimal
    handling_fee: Decimal


@dataclass
class SubmissionResult:
    success: bool
    mode: str
    order_id: Optional[int] = None
    handle: Optional[str] = None
    transaction_id: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[Decimal] = None
    error: Optional[str] = None


@dataclass
class OrderStatusSnapshot:
    id: Optional[int]
    status: Optional[str]
    transaction_id: Optional[str] = None
    tracking_numbers: List[str] = field(default_factory=list)
    item_fulfillments: List[Dict[str, Any]] = field(default_factory=list)
    customer_reference_number: Optional[str] = None


@dataclass
class PollResult:
    handle: Optional[str]
    id: Optional[int] = None
    transaction_id: Optional[str] = None
    sync_error: Optional[str] = None
    sync_attempts_remaining: Optional[int] = None


def to_supplier_address(address: Mapping[str, Any]) -> Dict[str, str]:
    """Checkout shipping form -> Platform Gold address."""
    return {
        "addressee": address.get("fullName") or address.get("addressee") or "",
        "attention": address.get("attention") or "",
        "addr1": address.get("streetAddress") or address.get("addr1") or "",
        "addr2": address.get("aptSuite") or address.get("addr2") or "",
        "city": address.get("city") or "",
        "state": address.get("state") or "",
        "zip": address.get("zipCode") or address.get("zip") or "",
        "country": address.get("country") or "US",
    }


def format_order_items(items: List[Mapping[str, Any]]) -> List[Dict[str, int]]:
    formatted = []
    for item in items:
        raw_id = item.get("itemId", item.get("id"))
        try:
            item_id = int(raw_id)
        except (TypeError, ValueError):
            raise UpstreamUnavailable(f"Item id {raw_id!r} is not a Platform Gold inventory id")
        formatted.append({"id": item_id, "quantity": int(item.get("quantity") or 1)})
    return formatted


def _decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    return Decimal(str(value))


def _first(body: Any, path: str) -> Dict[str, Any]:
    if isinstance(body, list):
        if not body:
            raise UpstreamUnavailable(f"Platform Gold returned an empty response for {path}")
        body = body[0]
    if not isinstance(body, dict):
        raise UpstreamUnavailable(f"Unexpected Platform Gold response for {path}")
    return body


def _to_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class PlatformGoldGateway:
    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        email: Optional[str] = None,
        password: Optional[str] = None,
        timeout: Optional[float] = None,
        status_retries: Optional[int] = None,
        backoff_seconds: float = 0.5,
        quote_mode: Optional[bool] = None,
        token_cache=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.platform_gold_base_url).rstrip("/")
        self.email = email or settings.PLATFORM_GOLD_EMAIL
        self.password = password or settings.PLATFORM_GOLD_PASSWORD
        self.timeout = timeout or settings.PLATFORM_GOLD_TIMEOUT_SECONDS
        self.status_retries = settings.PLATFORM_GOLD_STATUS_RETRIES if status_retries is None else status_retries
        self.backoff_seconds = backoff_seconds
        self.quote_mode = settings.PLATFORM_GOLD_QUOTE_MODE if quote_mode is None else quote_mode
        self._transport = transport
        self.tokens = SupplierTokenProvider(self._login, cache=token_cache)
        # name -> (records, fetched_at)
        self._lookup_cache: Dict[str, Tuple[List[Dict[str, Any]], float]] = {}

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 10.0)),
            transport=self._transport,
        )

    async def _login(self) -> str:
        if not (self.email and self.password):
            raise UpstreamUnavailable("Platform Gold credentials are not configured")

        url = f"{self.base_url}/login"
        try:
            async with self._client() as client:
                resp = await client.post(
                    url,
                    json={"email": self.email, "password": self.password},
                    headers={"Accept": "application/json"},
                )
        except httpx.RequestError as exc:
            supplier_logger.log_event(
                "login", "Platform Gold login failed", status="error", error=f"{type(exc).__name__}: {exc}"
            )
            raise UpstreamUnavailable(f"Platform Gold login failed: {exc}")

        if resp.status_code != 200:
            supplier_logger.log_event(
                "login",
                "Platform Gold login rejected",
                response_data={"status_code": resp.status_code, "body": resp.text[:500]},
                status="error",
                error=f"HTTP {resp.status_code}",
            )
            raise UpstreamUnavailable(f"Platform Gold login failed: {resp.status_code}")

        data = resp.json()
        token = data.get("token") if isinstance(data, dict) else None
        if not token or not isinstance(token, str):
            raise UpstreamUnavailable("No token received from Platform Gold API")

        supplier_logger.log_event("login", "Platform Gold login succeeded", response_data={"token": token})
        return token

    async def _send(self, client: httpx.AsyncClient, method: str, url: str, json_body: Any) -> httpx.Response:
        token = await self.tokens.get_token()
        resp = await client.request(
            method, url, json=json_body, headers={"Accept": "application/json", "Authorization": f"Bearer {token}"}
        )
        if resp.status_code == 401:
            logger.warning("Platform Gold rejected token for %s %s; logging in again", method, url)
            self.tokens.invalidate()
            token = await self.tokens.get_token()
            resp = await client.request(
                method, url, json=json_body, headers={"Accept": "application/json", "Authorization": f"Bearer {token}"}
            )
        return resp

    async def _request(self, method: str, path: str, *, json_body: Any = None, retry: bool = False) -> Any:
        """Authenticated call. ``retry`` is only for idempotent reads."""
        url = f"{self.base_url}{path}"
        attempts = 1 + (self.status_retries if retry else 0)
        event = f"{method.lower()} {path}"

        for attempt in range(1, attempts + 1):
            try:
                async with self._client() as client:
                    resp = await self._send(client, method, url, json_body)
            except httpx.RequestError as exc:
                error = f"{type(exc).__name__}: {exc}"
                supplier_logger.log_event(event, f"{method} {path} attempt {attempt}/{attempts}", status="error", error=error)
                if attempt < attempts:
                    await asyncio.sleep(self.backoff_seconds * (2 ** (attempt - 1)))
                    continue
                raise UpstreamUnavailable(f"Platform Gold {method} {path} failed: {error}")

            if resp.status_code >= 500 and attempt < attempts:
                supplier_logger.log_event(
                    event,
                    f"{method} {path} attempt {attempt}/{attempts}",
                    status="error",
                    error=f"HTTP {resp.status_code}",
                )
                await asyncio.sleep(self.backoff_seconds * (2 ** (attempt - 1)))
                continue

            if not 200 <= resp.status_code < 300:
                supplier_logger.log_event(
                    event,
                    f"{method} {path} failed",
                    request_data={"body": json_body} if json_body is not None else None,
                    response_data={"status_code": resp.status_code, "body": resp.text[:500]},
                    status="error",
                    error=f"HTTP {resp.status_code}",
                )
                raise UpstreamUnavailable(f"Platform Gold API request failed: {resp.status_code}")

            try:
                body = resp.json()
            except ValueError:
                raise UpstreamUnavailable(f"Platform Gold returned non-JSON body for {path}")

            supplier_logger.log_event(event, f"{method} {path} -> {resp.status_code}")
            return body

        # Unreachable: the loop either returns or raises on its last attempt.
        raise UpstreamUnavailable(f"Platform Gold {method} {path} failed")

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def _cached_list(self, key: str, path: str) -> List[Dict[str, Any]]:
        now = time.time()
        cached = self._lookup_cache.get(key)
        if cached is not None and now - cached[1] < _LOOKUP_TTL_SECONDS:
            return cached[0]

        body = await self._request("GET", path, retry=True)
        records = body if isinstance(body, list) else []
        self._lookup_cache[key] = (records, now)
        return records

    async def list_payment_methods(self) -> List[Dict[str, Any]]:
        return await self._cached_list("payment_methods", "/payment-methods")

    async def list_shipping_instructions(self) -> List[Dict[str, Any]]:
        return await self._cached_list("shipping_instructions", "/shipping-instructions")

    async def resolve_payment_method(self, name: Optional[str] = None) -> Dict[str, Any]:
        wanted = (name or settings.PLATFORM_GOLD_PAYMENT_METHOD_NAME).strip().lower()
        for method in await self.list_payment_methods():
            if str(method.get("title", "")).strip().lower() == wanted:
                return method
        raise SupplierConfigurationError(f"Platform Gold payment method {wanted!r} not found")

    async def resolve_shipping_instruction(self, name: Optional[str] = None) -> Dict[str, Any]:
        wanted = (name or settings.PLATFORM_GOLD_SHIPPING_INSTRUCTION_NAME).strip().lower()
        for instruction in await self.list_shipping_instructions():
            if str(instruction.get("name", "")).strip().lower() == wanted:
                return instruction
        raise SupplierConfigurationError(f"Platform Gold shipping instruction {wanted!r} not found")

    def clear_lookup_cache(self) -> None:
        self._lookup_cache.clear()

    # ------------------------------------------------------------------
    # Sales orders
    # ------------------------------------------------------------------

    async def build_order_request(
        self,
        *,
        items: List[Mapping[str, Any]],
        shipping_address: Mapping[str, Any],
        email: str,
        customer_reference_number: str,
        confirmation_number: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        payment_method = await self.resolve_payment_method()
        shipping_instruction = await self.resolve_shipping_instruction()
        request = {
            "items": format_order_items(items),
            "shippingAddress": to_supplier_address(shipping_address),
            "email": email,
            "paymentMethodId": payment_method["id"],
            "shippingInstructionId": shipping_instruction["id"],
            "customerReferenceNumber": customer_reference_number[:MAX_REFERENCE_LENGTH],
        }
        if confirmation_number:
            request["confirmationNumber"] = confirmation_number[:MAX_REFERENCE_LENGTH]
        if notes:
            request["notes"] = notes
        return request

    async def create_quote(self, request: Dict[str, Any]) -> Quote:
        body = await self._request("POST", "/sales-order/quote/create", json_body=[request])
        data = _first(body, "/sales-order/quote/create")
        if not data.get("handle"):
            raise UpstreamUnavailable("Platform Gold quote response has no handle")
        quote = Quote(
            handle=data["handle"],
            amount=_decimal(data.get("amount")),
            handling_fee=_decimal(data.get("handlingFee")),
        )
        logger.info("Platform Gold quote %s amount=%s handling=%s", quote.handle, quote.amount, quote.handling_fee)
        return quote

    async def submit_order(self, request: Dict[str, Any]) -> SubmissionResult:
        """Create the sales order (or only a quote in quote mode).

        Never retried here: a repeated POST would create a second upstream order.
        """
        if self.quote_mode:
            quote = await self.create_quote(request)
            return SubmissionResult(success=True, mode="quote", handle=quote.handle, amount=quote.amount)

        body = await self._request("POST", "/sales-order", json_body=[request])
        return self._submission_result(_first(body, "/sales-order"), mode="order")

    @staticmethod
    def _submission_result(data: Dict[str, Any], mode: str) -> SubmissionResult:
        order_id = _to_int(data.get("id"))
        if order_id is not None:
            return SubmissionResult(
                success=True,
                mode=mode,
                order_id=order_id,
                transaction_id=data.get("transactionId"),
                status=data.get("status"),
                amount=_decimal(data.get("amount")),
            )
        if data.get("handle"):
            # Asynchronous creation: poll the handle for the order id later.
            return SubmissionResult(success=True, mode=mode, handle=data["handle"], amount=_decimal(data.get("amount")))
        return SubmissionResult(
            success=False,
            mode=mode,
            error=data.get("error") or data.get("message") or "Platform Gold returned neither an order id nor a handle",
        )

    @staticmethod
    def _status_snapshot(data: Dict[str, Any]) -> OrderStatusSnapshot:
        return OrderStatusSnapshot(
            id=_to_int(data.get("id")),
            status=data.get("status"),
            transaction_id=data.get("transactionId"),
            tracking_numbers=data.get("trackingNumbers") or [],
            item_fulfillments=data.get("itemFulfillments") or [],
            customer_reference_number=data.get("customerReferenceNumber"),
        )

    async def fetch_order_status(self, order_id: int) -> OrderStatusSnapshot:
        body = await self._request("POST", "/sales-order/status", json_body=[{"id": int(order_id)}], retry=True)
        return self._status_snapshot(_first(body, "/sales-order/status"))

    async def poll_order(self, handle: str) -> PollResult:
        body = await self._request("POST", "/sales-order/poll", json_body=[{"handle": handle}], retry=True)
        data = _first(body, "/sales-order/poll")
        return PollResult(
            handle=data.get("handle", handle),
            id=_to_int(data.get("id")),
            transaction_id=data.get("transactionId"),
            sync_error=data.get("syncError"),
            sync_attempts_remaining=data.get("syncAttemptsRemaining"),
        )

    async def search_orders(
        self,
        *,
        customer_reference_number: Optional[str] = None,
        transaction_id: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
    ) -> List[OrderStatusSnapshot]:
        criteria: Dict[str, Any] = {}
        if customer_reference_number:
            criteria["customerReferenceNumber"] = customer_reference_number
        if transaction_id:
            criteria["transactionId"] = transaction_id
        if date_from and date_to:
            criteria["transactionDate"] = {"from": date_from, "to": date_to}

        body = await self._request("POST", "/sales-order/search", json_body=criteria, retry=True)
        return [self._status_snapshot(d) for d in (body or []) if isinstance(d, dict)]

    async def update_order(
        self,
        order_id: int,
        *,
        shipping_address: Optional[Mapping[str, Any]] = None,
        shipping_instruction_id: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> OrderStatusSnapshot:
        """Correct the shipping details of an existing sales order (operator recovery)."""
        payload: Dict[str, Any] = {"id": int(order_id)}
        if shipping_address is not None:
            payload["shippingAddress"] = to_supplier_address(shipping_address)
        if shipping_instruction_id is not None:
            payload["shippingInstructionId"] = shipping_instruction_id
        if notes:
            payload["orderNotes"] = notes

        body = await self._request("POST", "/sales-order/update", json_body=[payload])
        return self._status_snapshot(_first(body, "/sales-order/update"))


_gateway: Optional[PlatformGoldGateway] = None


def get_supplier_gateway() -> PlatformGoldGateway:
    global _gateway
    if _gateway is None:
        _gateway = PlatformGoldGateway()
    return _gateway
