"""Tools the chat assistant may call on behalf of the customer.

Each tool returns a JSON-safe dict with ``success`` and a localised
``message``; failures are reported in the result and never raised, so the
model can explain them to the customer.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from psycopg import Error as DBError

from . import db
from .utils import money, new_id, random_base36

logger = logging.getLogger(__name__)

TICKET_CATEGORIES = (
    "order_issue", "payment_issue", "delivery_issue",
    "product_issue", "refund_request", "other",
)

STATUS_LABELS = {
    "pending": ("অপেক্ষমাণ", "Pending"),
    "confirmed": ("নিশ্চিত", "Confirmed"),
    "processing": ("প্রসেসিং", "Processing"),
    "preparing": ("প্রস্তুত হচ্ছে", "Preparing"),
    "ready": ("প্রস্তুত", "Ready"),
    "shipped": ("শিপড", "Shipped"),
    "served": ("পরিবেশিত", "Served"),
    "delivered": ("ডেলিভার্ড", "Delivered"),
    "cancelled": ("বাতিল", "Cancelled"),
    "refunded": ("রিফান্ড", "Refunded"),
}

CATEGORY_LABELS = {
    "order_issue": ("অর্ডার সমস্যা", "Order Issue"),
    "payment_issue": ("পেমেন্ট সমস্যা", "Payment Issue"),
    "delivery_issue": ("ডেলিভারি সমস্যা", "Delivery Issue"),
    "product_issue": ("প্রোডাক্ট সমস্যা", "Product Issue"),
    "refund_request": ("রিফান্ড অনুরোধ", "Refund Request"),
    "other": ("অন্যান্য", "Other"),
}

MESSAGES = {
    "login_orders": ("আপনার orders দেখতে প্রথমে login করুন।", "Please login to view your orders."),
    "no_orders": ("আপনার কোনো order নেই।", "You don't have any orders yet."),
    "recent_orders": ("আপনার সাম্প্রতিক {n}টি order:", "Your recent {n} orders:"),
    "orders_failed": ("Orders লোড করতে সমস্যা হয়েছে।", "Failed to load orders."),
    "login_status": ("Order status দেখতে প্রথমে login করুন।", "Please login to check order status."),
    "order_not_found": ("Order #{number} পাওয়া যায়নি।", "Order #{number} not found."),
    "not_yours": ("এই order টি আপনার নয়।", "This order does not belong to you."),
    "status_failed": ("Order status লোড করতে সমস্যা হয়েছে।", "Failed to load order status."),
    "ticket_identity": (
        "Ticket তৈরি করতে আপনার phone number বা login প্রয়োজন।",
        "Please provide your phone number or login to create a ticket.",
    ),
    "ticket_created": (
        "আপনার ticket সফলভাবে তৈরি হয়েছে! Ticket Number: {ticket}। আমাদের টিম শীঘ্রই আপনার সাথে যোগাযোগ করবে।",
        "Your ticket has been created successfully! Ticket Number: {ticket}. Our team will contact you soon.",
    ),
    "ticket_failed": (
        "Ticket তৈরি করতে সমস্যা হয়েছে। পরে আবার চেষ্টা করুন।",
        "Failed to create ticket. Please try again later.",
    ),
    "bad_category": ("অবৈধ category।", "Invalid ticket category."),
    "bad_subject": ("Subject ৫ থেকে ২০০ অক্ষরের হতে হবে।", "Subject must be between 5 and 200 characters."),
    "bad_description": (
        "বিবরণ ১০ থেকে ১০০০ অক্ষরের হতে হবে।",
        "Description must be between 10 and 1000 characters.",
    ),
}

_BN_DIGITS = str.maketrans("0123456789", "০১২৩৪৫৬৭৮৯")


@dataclass
class ChatContext:
    user_id: str | None = None
    user_name: str | None = None
    user_phone: str | None = None
    user_email: str | None = None


def generate_ticket_number(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"TKT-{now.strftime('%Y%m%d')}-{random_base36(4)}"


class ChatTools:
    def __init__(self, context: ChatContext, locale: str = "en"):
        self.context = context
        self.bengali = locale == "bn"

    def _pick(self, pair: tuple[str, str]) -> str:
        return pair[0] if self.bengali else pair[1]

    def _msg(self, key: str, **kwargs) -> str:
        return self._pick(MESSAGES[key]).format(**kwargs)

    def status_label(self, status: str | None) -> str:
        status = status or "pending"
        return self._pick(STATUS_LABELS[status]) if status in STATUS_LABELS else status

    def _date(self, value) -> str:
        if not value:
            return "N/A"
        if isinstance(value, str):
            value = datetime.fromisoformat(value)
        if self.bengali:
            return value.strftime("%d/%m/%Y").translate(_BN_DIGITS)
        return f"{value.month}/{value.day}/{value.year}"

    @staticmethod
    def _total(order: dict) -> str:
        return f"{order.get('currency') or 'BDT'} {money(order.get('total')):g}"

    def get_customer_orders(self, limit=5) -> dict:
        if not self.context.user_id:
            return {"success": False, "message": self._msg("login_orders")}
        try:
            limit = max(1, min(10, int(limit)))
        except (TypeError, ValueError):
            limit = 5
        try:
            rows = db.fetch_all(
                """
                SELECT order_number, status, total, currency, items, created_at
                FROM orders WHERE user_id = %s
                ORDER BY created_at DESC LIMIT %s
                """,
                (self.context.user_id, limit),
            )
        except DBError:
            logger.exception("chat tool failed to load orders")
            return {"success": False, "message": self._msg("orders_failed")}
        if not rows:
            return {"success": True, "message": self._msg("no_orders"), "orders": []}
        orders = [
            {
                "order_number": r["order_number"],
                "status": self.status_label(r["status"]),
                "total": self._total(r),
                "item_count": len(r.get("items") or []),
                "date": self._date(r.get("created_at")),
            }
            for r in rows
        ]
        return {"success": True, "message": self._msg("recent_orders", n=len(orders)), "orders": orders}

    def get_order_status(self, order_number: str) -> dict:
        if not self.context.user_id:
            return {"success": False, "message": self._msg("login_status")}
        number = (order_number or "").strip().lstrip("#").upper()
        try:
            order = db.fetch_one(
                """
                SELECT order_number, status, payment_status, total, currency, shipping_address,
                       items, created_at, user_id
                FROM orders WHERE order_number = %s LIMIT 1
                """,
                (number,),
            )
        except DBError:
            logger.exception("chat tool failed to load order %s", number)
            return {"success": False, "message": self._msg("status_failed")}
        if not order:
            return {"success": False, "message": self._msg("order_not_found", number=number)}
        if order["user_id"] != self.context.user_id:
            return {"success": False, "message": self._msg("not_yours")}
        address = order.get("shipping_address") or {}
        return {
            "success": True,
            "order": {
                "order_number": order["order_number"],
                "status": self.status_label(order["status"]),
                "payment_status": order["payment_status"],
                "total": self._total(order),
                "item_count": len(order.get("items") or []),
                "shipping_city": address.get("city") or "N/A",
                "order_date": self._date(order.get("created_at")),
            },
        }

    def create_support_ticket(self, category: str, subject: str, description: str, order_id: str | None = None) -> dict:
        if category not in TICKET_CATEGORIES:
            return {"success": False, "message": self._msg("bad_category")}
        subject = (subject or "").strip()
        description = (description or "").strip()
        if not 5 <= len(subject) <= 200:
            return {"success": False, "message": self._msg("bad_subject")}
        if not 10 <= len(description) <= 1000:
            return {"success": False, "message": self._msg("bad_description")}
        ctx = self.context
        if not ctx.user_phone and not ctx.user_id:
            return {"success": False, "message": self._msg("ticket_identity")}

        ticket_number = generate_ticket_number()
        try:
            valid_order_id = None
            if order_id and ctx.user_id:
                order = db.fetch_one("SELECT id, user_id FROM orders WHERE id = %s LIMIT 1", (order_id,))
                if order and order["user_id"] == ctx.user_id:
                    valid_order_id = order["id"]
            db.execute(
                """
                INSERT INTO support_tickets (
                    id, ticket_number, user_id, order_id, category, subject, description,
                    status, priority, customer_name, customer_email, customer_phone
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, 'open', %s, %s, %s, %s)
                """,
                (
                    new_id(), ticket_number, ctx.user_id, valid_order_id, category, subject, description,
                    "high" if category == "refund_request" else "medium",
                    ctx.user_name or "Guest", ctx.user_email, ctx.user_phone,
                ),
            )
        except DBError:
            logger.exception("chat tool failed to create ticket")
            return {"success": False, "message": self._msg("ticket_failed")}
        logger.info("support ticket %s created category=%s user=%s", ticket_number, category, ctx.user_id)
        return {
            "success": True,
            "ticket_number": ticket_number,
            "category": self._pick(CATEGORY_LABELS[category]),
            "message": self._msg("ticket_created", ticket=ticket_number),
        }

    def dispatch(self, name: str, args: dict | None) -> dict:
        args = dict(args or {})
        try:
            if name == "get_customer_orders":
                return self.get_customer_orders(args.get("limit", 5))
            if name == "get_order_status":
                return self.get_order_status(str(args.get("order_number") or ""))
            if name == "create_support_ticket":
                return self.create_support_ticket(
                    str(args.get("category") or ""),
                    str(args.get("subject") or ""),
                    str(args.get("description") or ""),
                    args.get("order_id") or None,
                )
        except Exception:
            logger.exception("chat tool %s crashed", name)
            return {"success": False, "message": f"Tool {name} failed"}
        return {"success": False, "message": f"Unknown tool: {name}"}

    def declarations(self) -> list[dict]:
        """Function declarations in the shape the Gemini SDK accepts."""
        return [
            {
                "name": "get_customer_orders",
                "description": "Shows the signed-in customer's recent orders.",
                "parameters": {
                    "type": "OBJECT",
                    "properties": {
                        "limit": {"type": "INTEGER", "description": "Number of orders to fetch (1-10, default 5)"},
                    },
                },
            },
            {
                "name": "get_order_status",
                "description": "Shows the status of one of the customer's orders by order number.",
                "parameters": {
                    "type": "OBJECT",
                    "properties": {
                        "order_number": {"type": "STRING", "description": "Order number, e.g. DC12345678ABCD"},
                    },
                    "required": ["order_number"],
                },
            },
            {
                "name": "create_support_ticket",
                "description": "Creates a support ticket for a customer complaint or issue.",
                "parameters": {
                    "type": "OBJECT",
                    "properties": {
                        "category": {
                            "type": "STRING",
                            "enum": list(TICKET_CATEGORIES),
                            "description": "Category of the issue",
                        },
                        "subject": {"type": "STRING", "description": "Brief subject, 5-200 characters"},
                        "description": {"type": "STRING", "description": "Detailed description, 10-1000 characters"},
                        "order_id": {"type": "STRING", "description": "Related order id, if any"},
                    },
                    "required": ["category", "subject", "description"],
                },
            },
        ]
