import logging
import re

import google.generativeai as genai
from flask import jsonify, request

from . import db
from .auth import STAFF_ROLES, optional_user, requires_auth
from .chat_tools import ChatContext, ChatTools
from .config import get_config
from .utils import json_body, money, new_id, page_args, serialize

logger = logging.getLogger(__name__)

MAX_TOOL_STEPS = 5
PRODUCT_TAG = re.compile(r"\[PRODUCT:([^\]]+)\]")
TICKET_STATUSES = ("open", "in_progress", "resolved", "closed")
TICKET_PRIORITIES = ("low", "medium", "high", "urgent")


def parse_product_tags(text: str) -> list[dict]:
    """Extract ``[PRODUCT:slug:name:price:category:inStock:image]`` cards from a reply."""
    products = []
    for match in PRODUCT_TAG.finditer(text or ""):
        parts = match.group(1).split(":", 5)
        if len(parts) < 5:
            continue
        slug, name, price, category, in_stock = (p.strip() for p in parts[:5])
        try:
            price_value = float(price)
        except ValueError:
            price_value = None
        products.append({
            "slug": slug,
            "name": name,
            "price": price_value,
            "category": category,
            "in_stock": in_stock.lower() == "true",
            "image": parts[5].strip() if len(parts) > 5 else None,
        })
    return products


def load_context() -> ChatContext:
    claims = optional_user()
    if not claims:
        return ChatContext()
    row = db.fetch_one("SELECT phone FROM users WHERE id = %s", (claims.get("sub"),))
    return ChatContext(
        user_id=claims.get("sub"),
        user_name=claims.get("name"),
        user_email=claims.get("email"),
        user_phone=(row or {}).get("phone"),
    )


def fetch_prompt_products(limit: int = 50) -> list[dict]:
    rows = db.fetch_all(
        """
        SELECT p.slug, p.name, p.price, p.quantity, p.track_quantity, p.featured_image,
               COALESCE(c.name, 'General') AS category
        FROM products p
        LEFT JOIN categories c ON c.id = p.category_id
        WHERE p.is_active = TRUE
        ORDER BY p.is_featured DESC, p.created_at DESC
        LIMIT %s
        """,
        (limit,),
    )
    return [
        {
            "slug": r["slug"],
            "name": r["name"],
            "price": money(r["price"]),
            "category": r["category"],
            "in_stock": (not r["track_quantity"]) or int(r["quantity"] or 0) > 0,
            "image": r.get("featured_image") or "/placeholder.svg",
        }
        for r in rows
    ]


def build_system_prompt(products: list[dict], locale: str, context: ChatContext) -> str:
    cfg = get_config()
    bengali = locale == "bn"
    if context.user_id:
        capabilities = (
            "## ORDER & SUPPORT CAPABILITIES (LOGGED IN USER)\n"
            f'You are chatting with a logged-in customer "{context.user_name or "User"}".\n'
            "1. Show Orders: call get_customer_orders when the customer wants to see orders.\n"
            "2. Order Status: call get_order_status to check a specific order.\n"
            "3. Support Ticket: call create_support_ticket for complaints, problems or refunds.\n"
            "Format tool results nicely in your reply."
        )
    else:
        capabilities = (
            "## ORDER & SUPPORT CAPABILITIES (GUEST USER)\n"
            "This user is not logged in.\n"
            '- For orders or order status, say: "Please login to view your orders."\n'
            "- Guests can still create support tickets if they provide a phone number."
        )
    if products:
        product_list = "\n".join(
            f'- slug="{p["slug"]}" | name="{p["name"]}" | price={p["price"]:g} | '
            f'category="{p["category"]}" | inStock={str(p["in_stock"]).lower()} | image="{p["image"]}"'
            for p in products
        )
    else:
        product_list = "No products available."
    language = (
        "Bengali (Bangla). Use English only if the user writes in English or for technical terms."
        if bengali
        else "English. Use Bengali only if the user writes in Bengali."
    )
    greeting = 'Use "আসসালামু আলাইকুম"' if bengali else 'Use "Hello" or "Hi"'
    add_to_cart = "প্রোডাক্ট কার্ডে ক্লিক করুন এবং Add to Cart করুন!" if bengali else "Click the product card and Add to Cart!"
    return f"""You are a customer support assistant for "{cfg.BRAND_NAME}".
LANGUAGE: {language}
GREETING: {greeting}. Never use "Namaskar".

{capabilities}

## PRODUCT DISPLAY FORMAT (MANDATORY)
When showing products, use this EXACT format:
[PRODUCT:slug:name:price:category:inStock:imageUrl]
Example: [PRODUCT:chicken-biryani:Chicken Biryani:350:Rice:true:/placeholder.svg]

## AVAILABLE PRODUCTS
{product_list}

## RULES
1. When the user asks about products, respond with 3-5 [PRODUCT:...] tags.
2. Use the EXACT slug from the product list; never invent slugs.
3. Price is a plain number inside the tag, without currency symbols.
4. Use the image path exactly as listed.
5. When a ticket is created, show the ticket number prominently.
6. Never take orders directly in chat. Tell customers: "{add_to_cart}"

## STORE INFO
- Store: {cfg.BRAND_NAME}
- Currency: {cfg.CURRENCY_CODE}
- Contact: {cfg.CONTACT_PHONE}, {cfg.CONTACT_EMAIL}"""


def _model_name() -> str:
    # Accept either plain name (gemini-2.0-flash) or full (models/gemini-2.0-flash)
    name = get_config().GEMINI_MODEL.strip()
    return name.split("/", 1)[1] if name.startswith("models/") else name


def _build_model(system_prompt: str, declarations: list[dict]):
    genai.configure(api_key=get_config().GOOGLE_API_KEY)
    return genai.GenerativeModel(
        _model_name(),
        system_instruction=system_prompt,
        tools=[{"function_declarations": declarations}],
    )


def _parts(response) -> list:
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return []
    content = getattr(candidates[0], "content", None)
    return list(getattr(content, "parts", None) or [])


def _function_calls(response) -> list[tuple[str, dict]]:
    calls = []
    for part in _parts(response):
        fc = getattr(part, "function_call", None)
        if fc and getattr(fc, "name", None):
            calls.append((fc.name, dict(fc.args or {})))
    return calls


def _response_text(response) -> str:
    return "".join(getattr(p, "text", "") or "" for p in _parts(response)).strip()


def _function_response(name: str, result: dict):
    return genai.protos.Part(
        function_response=genai.protos.FunctionResponse(name=name, response={"result": result})
    )


def run_chat(messages: list[dict], locale: str, context: ChatContext) -> dict:
    """Ask the model for a reply, executing requested tools for up to MAX_TOOL_STEPS rounds."""
    tools = ChatTools(context, locale)
    prompt = build_system_prompt(fetch_prompt_products(), locale, context)
    model = _build_model(prompt, tools.declarations())
    history = [
        {"role": "user" if m["role"] == "user" else "model", "parts": [m["content"]]}
        for m in messages[:-1]
    ]
    session = model.start_chat(history=history)
    response = session.send_message(messages[-1]["content"])

    tool_calls = []
    for _ in range(MAX_TOOL_STEPS):
        calls = _function_calls(response)
        if not calls:
            break
        replies = []
        for name, args in calls:
            result = tools.dispatch(name, args)
            logger.info("chat tool %s success=%s", name, result.get("success"))
            tool_calls.append({"name": name, "args": args, "result": result})
            replies.append(_function_response(name, result))
        response = session.send_message(replies)

    reply = _response_text(response)
    return {"reply": reply, "products": parse_product_tags(reply), "tool_calls": tool_calls}


def _valid_messages(raw) -> list[dict] | None:
    if not isinstance(raw, list) or not raw:
        return None
    out = []
    for m in raw:
        if not isinstance(m, dict) or m.get("role") not in ("user", "assistant"):
            return None
        content = m.get("content")
        if not isinstance(content, str) or not content.strip():
            return None
        out.append({"role": m["role"], "content": content})
    if out[-1]["role"] != "user":
        return None
    return out


def register_chat(app):
    @app.post("/api/chat")
    def chat():
        body = json_body()
        messages = _valid_messages(body.get("messages"))
        if messages is None:
            return jsonify({"error": "messages must be a non-empty list ending with a user message"}), 400
        locale = body.get("locale") if body.get("locale") in ("en", "bn") else "en"
        if not get_config().GOOGLE_API_KEY:
            return jsonify({"error": "Chat service unavailable. GOOGLE_API_KEY not configured."}), 500

        context = load_context()
        guest = body.get("guest_info") or {}
        if not context.user_id and isinstance(guest, dict):
            context.user_name = guest.get("name") or None
            context.user_phone = guest.get("phone") or None
        try:
            result = run_chat(messages, locale, context)
        except Exception:
            app.logger.exception("chat model call failed")
            return jsonify({"error": "Chat service error. Please try again."}), 502
        return jsonify(result)

    @app.post("/api/save-chat")
    def save_chat():
        body = json_body()
        session_id = (body.get("session_id") or "").strip()
        message = body.get("message")
        if (
            not session_id
            or not isinstance(message, dict)
            or message.get("role") not in ("user", "assistant")
            or not message.get("content")
        ):
            return jsonify({"error": "Missing required fields"}), 400
        guest = body.get("guest_info") if isinstance(body.get("guest_info"), dict) else {}
        user_id = (optional_user() or {}).get("sub")

        def _work():
            with db.get_connection() as conn:
                with conn.cursor(row_factory=db.dict_row) as cur:
                    cur.execute(
                        """
                        INSERT INTO chat_conversations (id, session_id, user_id, guest_name, guest_phone, message_count)
                        VALUES (%s, %s, %s, %s, %s, 1)
                        ON CONFLICT (session_id) DO UPDATE SET
                            message_count = chat_conversations.message_count + 1,
                            user_id = COALESCE(chat_conversations.user_id, EXCLUDED.user_id),
                            guest_name = COALESCE(chat_conversations.guest_name, EXCLUDED.guest_name),
                            guest_phone = COALESCE(chat_conversations.guest_phone, EXCLUDED.guest_phone),
                            last_message_at = NOW(),
                            updated_at = NOW()
                        RETURNING id
                        """,
                        (new_id(), session_id, user_id, guest.get("name") or None, guest.get("phone") or None),
                    )
                    conversation_id = cur.fetchone()["id"]
                    cur.execute(
                        "INSERT INTO chat_messages (id, conversation_id, role, content) VALUES (%s, %s, %s, %s)",
                        (new_id(), conversation_id, message["role"], str(message["content"])),
                    )
                conn.commit()
                return conversation_id

        conversation_id = db.run_db(_work)
        return jsonify({"success": True, "conversation_id": conversation_id})

    @app.get("/api/chat-history")
    def chat_history():
        session_id = (request.args.get("session_id") or "").strip()
        if not session_id:
            return jsonify({"error": "Missing session_id"}), 400
        conversation = db.fetch_one(
            "SELECT id, guest_name, guest_phone FROM chat_conversations WHERE session_id = %s",
            (session_id,),
        )
        if not conversation:
            return jsonify({"messages": [], "guest_info": None})
        messages = db.fetch_all(
            "SELECT id, role, content, created_at FROM chat_messages WHERE conversation_id = %s ORDER BY created_at ASC",
            (conversation["id"],),
        )
        guest_info = None
        if conversation.get("guest_name") or conversation.get("guest_phone"):
            guest_info = {"name": conversation.get("guest_name") or "Guest", "phone": conversation.get("guest_phone") or ""}
        return jsonify({"messages": serialize(messages), "guest_info": guest_info})

    @app.get("/api/admin/chat")
    @requires_auth(STAFF_ROLES)
    def admin_conversations():
        page, limit, offset = page_args(default_limit=50)
        rows = db.fetch_all(
            """
            SELECT c.*, u.name AS user_name, u.email AS user_email
            FROM chat_conversations c
            LEFT JOIN users u ON u.id = c.user_id
            ORDER BY c.last_message_at DESC
            LIMIT %s OFFSET %s
            """,
            (limit, offset),
        )
        return jsonify({"conversations": serialize(rows), "page": page, "limit": limit})

    @app.get("/api/admin/chat/<conversation_id>")
    @requires_auth(STAFF_ROLES)
    def admin_conversation(conversation_id: str):
        conversation = db.fetch_one(
            """
            SELECT c.*, u.name AS user_name, u.email AS user_email
            FROM chat_conversations c LEFT JOIN users u ON u.id = c.user_id
            WHERE c.id = %s
            """,
            (conversation_id,),
        )
        if not conversation:
            return jsonify({"error": "Conversation not found"}), 404
        messages = db.fetch_all(
            "SELECT id, role, content, created_at FROM chat_messages WHERE conversation_id = %s ORDER BY created_at ASC",
            (conversation_id,),
        )
        return jsonify({"conversation": serialize(conversation), "messages": serialize(messages)})

    @app.delete("/api/admin/chat/<conversation_id>")
    @requires_auth(STAFF_ROLES)
    def admin_delete_conversation(conversation_id: str):
        if not db.execute("DELETE FROM chat_conversations WHERE id = %s", (conversation_id,)):
            return jsonify({"error": "Conversation not found"}), 404
        return jsonify({"success": True})

    @app.get("/api/admin/tickets")
    @requires_auth(STAFF_ROLES)
    def admin_tickets():
        status = request.args.get("status")
        if status and status != "all":
            rows = db.fetch_all(
                "SELECT * FROM support_tickets WHERE status = %s ORDER BY created_at DESC",
                (status,),
            )
        else:
            rows = db.fetch_all("SELECT * FROM support_tickets ORDER BY created_at DESC")
        return jsonify({"tickets": serialize(rows)})

    @app.patch("/api/admin/tickets/<ticket_id>")
    @requires_auth(STAFF_ROLES)
    def admin_update_ticket(ticket_id: str):
        body = json_body()
        updates = {}
        if "status" in body:
            if body["status"] not in TICKET_STATUSES:
                return jsonify({"error": "Invalid status"}), 400
            updates["status"] = body["status"]
        if "priority" in body:
            if body["priority"] not in TICKET_PRIORITIES:
                return jsonify({"error": "Invalid priority"}), 400
            updates["priority"] = body["priority"]
        if not updates:
            return jsonify({"error": "No fields to update"}), 400
        assignments = ", ".join(f"{k} = %s" for k in updates)
        row = db.execute(
            f"UPDATE support_tickets SET {assignments}, updated_at = NOW() WHERE id = %s RETURNING *",
            (*updates.values(), ticket_id),
            returning=True,
        )
        if not row:
            return jsonify({"error": "Ticket not found"}), 404
        return jsonify({"ticket": serialize(row)})
