"""Transactional email via the Resend HTTP API."""
from __future__ import annotations

import html
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import httpx

from bullion.config import settings
from bullion.db_models.order import Order
from bullion.utils.logger import logger


def _money(value: Any) -> str:
    return f"${float(value or 0):,.2f}"


def short_order_number(order_id: str) -> str:
    return order_id[-8:].upper()


def render_order_confirmation(order: Order) -> str:
    rows = []
    for item in order.items or []:
        final_price = (item.get("pricing") or {}).get("finalPrice", 0)
        rows.append(
            "<tr>"
            f"<td style=\"padding: 12px 0; border-bottom: 1px solid #e5e5e5;\">"
            f"<strong>{html.escape(str(item.get('name', '')))}</strong><br>"
            f"<span style=\"color: #7c7c7c;\">Qty: {item.get('quantity', 0)} &times; {_money(final_price)}</span></td>"
            f"<td style=\"padding: 12px 0; border-bottom: 1px solid #e5e5e5; text-align: right;\">"
            f"{_money(item.get('totalPrice'))}</td>"
            "</tr>"
        )

    address = order.shipping_address or {}
    shipping_html = ""
    if address:
        lines = [
            address.get("fullName") or address.get("addressee") or "Customer",
            address.get("streetAddress") or address.get("addr1") or "",
            address.get("aptSuite") or address.get("addr2") or "",
            f"{address.get('city', '')}, {address.get('state', '')} {address.get('zipCode') or address.get('zip') or ''}",
        ]
        shipping_html = (
            "<h3>Shipping To:</h3><p>"
            + "<br>".join(html.escape(l) for l in lines if l)
            + "</p>"
        )

    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Order Confirmation</title></head>
<body style="font-family: Arial, sans-serif; background-color: #f5f5f5; padding: 32px;">
  <div style="max-width: 600px; margin: 0 auto; background: #ffffff; border-radius: 16px; padding: 40px;">
    <h1 style="color: #ffc633; text-align: center;">Summit Bullion</h1>
    <h2 style="text-align: center;">Thank You for Your Order!</h2>
    <p style="text-align: center;">Order Number <strong>#{short_order_number(order.id)}</strong></p>
    <table width="100%" cellpadding="0" cellspacing="0">{''.join(rows)}</table>
    <table width="100%" cellpadding="0" cellspacing="0" style="margin-top: 24px;">
      <tr><td>Subtotal</td><td style="text-align: right;">{_money(order.subtotal)}</td></tr>
      <tr><td>Processing Fee</td><td style="text-align: right;">{_money(order.processing_fee)}</td></tr>
      <tr><td><strong>Total</strong></td><td style="text-align: right;"><strong>{_money(order.total)}</strong></td></tr>
    </table>
    {shipping_html}
    <p style="text-align: center; margin-top: 32px;">
      <a href="{settings.PUBLIC_BASE_URL.rstrip('/')}/orders">View Your Orders</a>
    </p>
    <p style="text-align: center; color: #7c7c7c; font-size: 12px;">
      &copy; {datetime.now(timezone.utc).year} Summit Bullion. All rights reserved.
    </p>
  </div>
</body>
</html>"""


class EmailNotifier:
    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        from_email: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key or settings.RESEND_API_KEY
        self.api_url = (api_url or settings.RESEND_API_URL).rstrip("/")
        self.from_email = from_email or settings.RESEND_FROM_EMAIL
        self._transport = transport

    async def send_order_confirmation(self, order: Order) -> Tuple[bool, Optional[str]]:
        """Never raises: a failed email must not affect the order."""
        if not self.api_key:
            logger.warning(f"RESEND_API_KEY not configured; skipping confirmation for order {order.id}")
            return False, "Email not configured"

        payload: Dict[str, Any] = {
            "from": self.from_email,
            "to": [order.account_email],
            "subject": f"Order Confirmed! #{short_order_number(order.id)} - Summit Bullion",
            "html": render_order_confirmation(order),
        }

        try:
            async with httpx.AsyncClient(timeout=15.0, transport=self._transport) as client:
                resp = await client.post(
                    f"{self.api_url}/emails",
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.RequestError as exc:
            logger.error(f"Order confirmation email for {order.id} failed: {type(exc).__name__}: {exc}")
            return False, str(exc)

        if resp.status_code >= 300:
            logger.error(
                f"Order confirmation email for {order.id} rejected: HTTP {resp.status_code} {resp.text[:300]}"
            )
            return False, f"HTTP {resp.status_code}"

        logger.info(f"Order confirmation email sent for {order.id} to {order.account_email}")
        return True, None


_notifier: Optional[EmailNotifier] = None


def get_notifier() -> EmailNotifier:
    global _notifier
    if _notifier is None:
        _notifier = EmailNotifier()
    return _notifier
