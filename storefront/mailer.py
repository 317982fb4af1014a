"""Transactional email through the Resend HTTP API.

Every sender returns a ``SendResult`` instead of raising; callers decide
whether a failed send matters.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from html import escape

import requests

from .config import get_config
from .utils import money

logger = logging.getLogger(__name__)

RESEND_ENDPOINT = "https://api.resend.com/emails"


@dataclass
class SendResult:
    success: bool
    id: str | None = None
    error: str | None = None


STATUS_MESSAGES = {
    "confirmed": ("Order Confirmed!", "Your order has been confirmed and is being prepared.", "#10b981"),
    "processing": ("Order Processing", "Your order is being processed and will be shipped soon.", "#3b82f6"),
    "shipped": ("Order Shipped!", "Your order is on its way! You will receive it soon.", "#8b5cf6"),
    "delivered": ("Order Delivered!", "Your order has been delivered. Thank you for shopping with us!", "#10b981"),
    "cancelled": (
        "Order Cancelled",
        "Your order has been cancelled. If you have any questions, please contact us.",
        "#ef4444",
    ),
}


def send_email(to: str | list[str], subject: str, html: str) -> SendResult:
    cfg = get_config()
    if not cfg.RESEND_API_KEY:
        logger.error("RESEND_API_KEY not configured; cannot send email")
        return SendResult(False, error="Email service not configured")
    recipients = [to] if isinstance(to, str) else list(to)
    try:
        resp = requests.post(
            RESEND_ENDPOINT,
            headers={"Authorization": f"Bearer {cfg.RESEND_API_KEY}"},
            json={"from": cfg.EMAIL_FROM, "to": recipients, "subject": subject, "html": html},
            timeout=10,
        )
    except requests.RequestException as e:
        logger.warning("resend request failed: %s", e)
        return SendResult(False, error=str(e))
    try:
        data = resp.json()
    except ValueError:
        data = {}
    if resp.ok:
        logger.info("email sent id=%s subject=%r", data.get("id"), subject)
        return SendResult(True, id=data.get("id"))
    logger.warning("resend rejected email status=%s body=%s", resp.status_code, data)
    return SendResult(False, error=data.get("message") or f"HTTP {resp.status_code}")


def _amount(value) -> str:
    return f"{get_config().CURRENCY_SYMBOL}{money(value):,.2f}"


def order_confirmation_html(order: dict) -> str:
    cfg = get_config()
    rows = []
    for item in order.get("items") or []:
        line_total = money(item.get("price")) * int(item.get("quantity") or 0)
        rows.append(
            "<tr>"
            f'<td style="padding:12px;border-bottom:1px solid #eee;"><strong>{escape(str(item.get("name", "")))}</strong><br>'
            f'<span style="color:#666;">Qty: {int(item.get("quantity") or 0)}</span></td>'
            f'<td style="padding:12px;border-bottom:1px solid #eee;text-align:right;">{_amount(line_total)}</td>'
            "</tr>"
        )
    shipping = money(order.get("shipping_cost"))
    discount = money(order.get("discount"))
    address = order.get("shipping_address") or {}
    address_lines = "".join(
        f'<p style="margin:5px 0 0;color:#666;">{escape(str(v))}</p>'
        for v in (
            address.get("phone"),
            address.get("address"),
            ", ".join(p for p in (address.get("city"), address.get("state")) if p),
            address.get("country"),
        )
        if v
    )
    method = order.get("payment_method") or "cod"
    method_label = "Cash on Delivery" if method == "cod" else escape(method)
    discount_row = (
        f'<p style="margin:0 0 10px;color:#666;">Discount: -{_amount(discount)}</p>' if discount > 0 else ""
    )
    brand = escape(cfg.BRAND_NAME)
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Order Confirmation - {escape(order["order_number"])}</title></head>
<body style="margin:0;padding:0;font-family:'Segoe UI',Tahoma,sans-serif;background:#f5f5f5;">
<div style="max-width:600px;margin:0 auto;padding:20px;">
  <div style="background:linear-gradient(135deg,#f59e0b,#ec4899);border-radius:16px 16px 0 0;padding:30px;text-align:center;">
    <h1 style="color:white;margin:0;">{brand}</h1>
    <p style="color:rgba(255,255,255,0.9);margin:10px 0 0;">Order Confirmation</p>
  </div>
  <div style="background:white;padding:30px;border-radius:0 0 16px 16px;">
    <h2 style="color:#333;margin:0;">Thank you for your order!</h2>
    <p style="color:#666;">Hi {escape(order.get("customer_name") or "")}, your order has been received.</p>
    <p style="font-size:20px;font-weight:bold;">{escape(order["order_number"])}</p>
    <h3>Order Items</h3>
    <table style="width:100%;border-collapse:collapse;">{"".join(rows)}</table>
    <div style="background:#f9fafb;border-radius:12px;padding:20px;margin:20px 0;">
      <p style="margin:0 0 10px;color:#666;">Subtotal: {_amount(order.get("subtotal"))}</p>
      {discount_row}
      <p style="margin:0 0 10px;color:#666;">Shipping: {"FREE" if shipping == 0 else _amount(shipping)}</p>
      <p style="margin:0;font-weight:bold;font-size:18px;">Total: {_amount(order.get("total"))}</p>
    </div>
    <h3>Shipping Address</h3>
    <p style="margin:0;color:#333;"><strong>{escape(str(address.get("name") or order.get("customer_name") or ""))}</strong></p>
    {address_lines}
    <p style="margin:20px 0 0;">Payment Method: <strong>{method_label}</strong></p>
    <p style="text-align:center;margin-top:25px;">
      <a href="{escape(cfg.APP_URL)}/track-order" style="background:#f59e0b;color:white;padding:15px 40px;border-radius:50px;text-decoration:none;">Track Your Order</a>
    </p>
    <p style="text-align:center;color:#666;font-size:14px;">Questions? Contact us at
      <a href="mailto:{escape(cfg.CONTACT_EMAIL)}">{escape(cfg.CONTACT_EMAIL)}</a></p>
  </div>
  <p style="text-align:center;color:#666;font-size:12px;">&copy; {datetime.now().year} {brand}. All rights reserved.</p>
</div>
</body>
</html>"""


def send_order_confirmation_email(order: dict) -> SendResult:
    email = order.get("customer_email")
    if not email:
        logger.warning("no customer email on order %s; skipping confirmation", order.get("order_number"))
        return SendResult(False, error="No customer email")
    subject = f"Order Confirmed - {order['order_number']} | {get_config().BRAND_NAME}"
    return send_email(email, subject, order_confirmation_html(order))


def status_email_content(status: str) -> tuple[str, str, str]:
    return STATUS_MESSAGES.get(
        status,
        (f"Order Update: {status}", f"Your order status has been updated to {status}.", "#6b7280"),
    )


def send_order_status_email(email: str, name: str, order_number: str, status: str) -> SendResult:
    if not email:
        return SendResult(False, error="No customer email provided")
    cfg = get_config()
    title, message, color = status_email_content(status)
    html = f"""<!DOCTYPE html>
<html>
<body style="margin:0;padding:20px;font-family:'Segoe UI',sans-serif;background:#f5f5f5;">
<div style="max-width:500px;margin:0 auto;background:white;border-radius:16px;overflow:hidden;">
  <div style="background:{color};padding:30px;text-align:center;">
    <h1 style="color:white;margin:0;">{escape(title)}</h1>
  </div>
  <div style="padding:30px;">
    <p style="color:#333;font-size:16px;">Hi {escape(name or "")},</p>
    <p style="color:#666;font-size:16px;">{escape(message)}</p>
    <p style="text-align:center;font-size:18px;font-weight:bold;">{escape(order_number)}</p>
    <p style="text-align:center;">
      <a href="{escape(cfg.APP_URL)}/track-order" style="background:{color};color:white;padding:12px 30px;border-radius:50px;text-decoration:none;">Track Order</a>
    </p>
  </div>
</div>
</body>
</html>"""
    return send_email(email, f"{title} - {order_number} | {cfg.BRAND_NAME}", html)
