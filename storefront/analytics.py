"""Server-side conversion events for the Facebook Conversions API."""
import hashlib
import logging
import re
import secrets
import string
import time

import requests
from flask import jsonify, request

from .config import get_config
from .utils import client_ip, json_body

logger = logging.getLogger(__name__)

GRAPH_URL = "https://graph.facebook.com/v18.0/{pixel_id}/events"

_HASHED_FIELDS = (
    ("email", "em"),
    ("phone", "ph"),
    ("first_name", "fn"),
    ("last_name", "ln"),
    ("city", "ct"),
    ("state", "st"),
    ("country", "country"),
    ("external_id", "external_id"),
)
_PLAIN_FIELDS = ("client_ip_address", "client_user_agent", "fbc", "fbp")


def hash_value(value: str) -> str:
    return hashlib.sha256(str(value).strip().lower().encode("utf-8")).hexdigest()


def prepare_user_data(user_data: dict | None) -> dict:
    """Hash PII the way the Graph API expects; pass browser identifiers through."""
    if not user_data:
        return {}
    prepared = {}
    for source, key in _HASHED_FIELDS:
        value = user_data.get(source)
        if not value:
            continue
        if source == "phone":
            value = re.sub(r"\D", "", str(value))
            if not value:
                continue
        prepared[key] = hash_value(value)
    for key in _PLAIN_FIELDS:
        if user_data.get(key):
            prepared[key] = user_data[key]
    return prepared


def generate_event_id() -> str:
    alphabet = string.ascii_lowercase + string.digits
    return f"{int(time.time() * 1000)}_{''.join(secrets.choice(alphabet) for _ in range(9))}"


def _custom_data(custom: dict | None) -> dict | None:
    if not custom:
        return None
    data = {"currency": custom.get("currency") or get_config().CURRENCY_CODE}
    for key in ("value", "content_ids", "content_name", "content_type", "num_items", "order_id", "search_string"):
        if custom.get(key) is not None:
            data[key] = custom[key]
    return data


def send_conversion_event(event: dict) -> dict:
    cfg = get_config()
    event_id = event.get("event_id") or generate_event_id()
    if not cfg.FACEBOOK_PIXEL_ID or not cfg.FACEBOOK_CONVERSIONS_API_TOKEN:
        logger.debug("facebook capi credentials missing; skipping %s", event.get("event_name"))
        return {"success": False, "event_id": event_id, "error": "Missing CAPI credentials"}

    payload_event = {
        "event_name": event["event_name"],
        "event_time": event.get("event_time") or int(time.time()),
        "event_id": event_id,
        "action_source": event.get("action_source") or "website",
        "user_data": prepare_user_data(event.get("user_data")),
    }
    if event.get("event_source_url"):
        payload_event["event_source_url"] = event["event_source_url"]
    custom = _custom_data(event.get("custom_data"))
    if custom:
        payload_event["custom_data"] = custom

    try:
        resp = requests.post(
            GRAPH_URL.format(pixel_id=cfg.FACEBOOK_PIXEL_ID),
            params={"access_token": cfg.FACEBOOK_CONVERSIONS_API_TOKEN},
            json={"data": [payload_event]},
            timeout=10,
        )
        result = resp.json()
    except (requests.RequestException, ValueError) as e:
        logger.warning("facebook capi request failed: %s", e)
        return {"success": False, "event_id": event_id, "error": str(e)}
    if result.get("error"):
        logger.warning("facebook capi error: %s", result["error"])
        return {"success": False, "event_id": event_id, "error": result["error"].get("message")}
    logger.info("facebook capi %s sent event_id=%s", event["event_name"], event_id)
    return {"success": True, "event_id": event_id}


def purchase(order_id, value, content_ids, num_items, currency=None, user_data=None, event_source_url=None):
    return send_conversion_event({
        "event_name": "Purchase",
        "custom_data": {
            "order_id": order_id,
            "value": value,
            "content_ids": content_ids,
            "num_items": num_items,
            "currency": currency,
            "content_type": "product",
        },
        "user_data": user_data,
        "event_source_url": event_source_url,
    })


def initiate_checkout(value, content_ids, num_items, currency=None, user_data=None, event_source_url=None, event_id=None):
    return send_conversion_event({
        "event_name": "InitiateCheckout",
        "event_id": event_id,
        "custom_data": {
            "value": value,
            "content_ids": content_ids,
            "num_items": num_items,
            "currency": currency,
            "content_type": "product",
        },
        "user_data": user_data,
        "event_source_url": event_source_url,
    })


def _content_event(name, content_id, content_name, value, currency, user_data, event_source_url, event_id):
    return send_conversion_event({
        "event_name": name,
        "event_id": event_id,
        "custom_data": {
            "content_ids": [content_id],
            "content_name": content_name,
            "value": value,
            "currency": currency,
            "content_type": "product",
        },
        "user_data": user_data,
        "event_source_url": event_source_url,
    })


def add_to_cart(content_id, content_name, value, currency=None, user_data=None, event_source_url=None, event_id=None):
    return _content_event("AddToCart", content_id, content_name, value, currency, user_data, event_source_url, event_id)


def view_content(content_id, content_name, value, currency=None, user_data=None, event_source_url=None, event_id=None):
    return _content_event("ViewContent", content_id, content_name, value, currency, user_data, event_source_url, event_id)


def complete_registration(user_data=None, event_source_url=None, event_id=None):
    return send_conversion_event({
        "event_name": "CompleteRegistration",
        "event_id": event_id,
        "user_data": user_data,
        "event_source_url": event_source_url,
    })


def lead(user_data=None, event_source_url=None, event_id=None):
    return send_conversion_event({
        "event_name": "Lead",
        "event_id": event_id,
        "user_data": user_data,
        "event_source_url": event_source_url,
    })


def search(search_string, user_data=None, event_source_url=None, event_id=None):
    return send_conversion_event({
        "event_name": "Search",
        "event_id": event_id,
        "custom_data": {"search_string": search_string},
        "user_data": user_data,
        "event_source_url": event_source_url,
    })


def request_user_data(extra: dict | None = None) -> dict:
    """User data enriched with the caller's IP, user agent and Facebook cookies."""
    data = dict(extra or {})
    data.update({
        "client_ip_address": client_ip(),
        "client_user_agent": request.headers.get("User-Agent"),
        "fbc": request.cookies.get("_fbc"),
        "fbp": request.cookies.get("_fbp"),
    })
    return data


def register_analytics(app):
    @app.post("/api/analytics/facebook")
    def facebook_event():
        body = json_body()
        event_name = body.get("event_name")
        if not event_name:
            return jsonify({"error": "Event name is required"}), 400
        custom = body.get("custom_data") or {}
        user_data = request_user_data(body.get("user_data"))
        referer = request.headers.get("Referer")
        event_id = body.get("event_id")
        currency = custom.get("currency")

        if event_name in ("ViewContent", "AddToCart"):
            helper = view_content if event_name == "ViewContent" else add_to_cart
            result = helper(
                custom.get("content_id") or "",
                custom.get("content_name") or "",
                custom.get("value") or 0,
                currency=currency,
                user_data=user_data,
                event_source_url=referer,
                event_id=event_id,
            )
        elif event_name == "InitiateCheckout":
            result = initiate_checkout(
                custom.get("value") or 0,
                custom.get("content_ids") or [],
                custom.get("num_items") or 0,
                currency=currency,
                user_data=user_data,
                event_source_url=referer,
                event_id=event_id,
            )
        elif event_name == "Search":
            result = search(custom.get("search_string") or "", user_data=user_data,
                            event_source_url=referer, event_id=event_id)
        elif event_name == "CompleteRegistration":
            result = complete_registration(user_data=user_data, event_source_url=referer, event_id=event_id)
        elif event_name == "Lead":
            result = lead(user_data=user_data, event_source_url=referer, event_id=event_id)
        else:
            return jsonify({"error": f"Unknown event: {event_name}"}), 400

        return jsonify(result)
