"""Dine-in floor: restaurant tables and table reservations."""
from datetime import datetime, timezone

from flask import jsonify, request
from psycopg import errors as pg_errors

from . import db
from .admin import _insert, _update
from .auth import STAFF_ROLES, current_user_id, optional_user, requires_auth
from .errors import NotFoundError, ValidationError
from .utils import json_body, new_id, serialize

TABLE_STATUSES = ("available", "occupied", "reserved", "cleaning")
RESERVATION_STATUSES = ("pending", "confirmed", "cancelled", "completed")


def clean_table(body: dict, partial: bool = False) -> dict:
    """Whitelist and validate table columns; ``partial`` is for updates."""
    values = {}
    if "table_number" in body or not partial:
        number = str(body.get("table_number") or "").strip()
        if not number:
            raise ValidationError("table_number is required")
        values["table_number"] = number
    if "capacity" in body or not partial:
        capacity = body.get("capacity")
        if not isinstance(capacity, int) or isinstance(capacity, bool) or capacity <= 0:
            raise ValidationError("capacity must be a positive integer")
        values["capacity"] = capacity
    if "location" in body:
        values["location"] = (str(body["location"]).strip() or None) if body["location"] is not None else None
    if "status" in body:
        if body["status"] not in TABLE_STATUSES:
            raise ValidationError(f"status must be one of {', '.join(TABLE_STATUSES)}")
        values["status"] = body["status"]
    return values


def parse_reservation_time(value, now: datetime | None = None) -> datetime:
    """Parse an ISO-8601 timestamp that must lie in the future; times without an offset are UTC."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("reservation_time is required")
    try:
        when = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError("reservation_time must be an ISO-8601 timestamp")
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    if when <= (now or datetime.now(timezone.utc)):
        raise ValidationError("reservation_time must be in the future")
    return when


def validate_reservation(body: dict) -> dict:
    name = (body.get("name") or "").strip()
    phone = (body.get("phone") or "").strip()
    guests = body.get("guest_count")
    if not name or not phone:
        raise ValidationError("name and phone are required")
    if not isinstance(guests, int) or isinstance(guests, bool) or guests <= 0:
        raise ValidationError("guest_count must be a positive integer")
    return {
        "name": name[:255],
        "phone": phone,
        "email": (body.get("email") or "").strip().lower() or None,
        "guest_count": guests,
        "reservation_time": parse_reservation_time(body.get("reservation_time")),
        "table_id": body.get("table_id") or None,
        "notes": body.get("notes") or None,
    }


def check_table_fits(table_id: str, guests: int) -> None:
    table = db.fetch_one("SELECT id, capacity FROM tables WHERE id = %s", (table_id,))
    if not table:
        raise NotFoundError("Table not found")
    if guests > int(table["capacity"]):
        raise ValidationError("Table is too small for this party", {"capacity": int(table["capacity"]), "guests": guests})


def register_dining(app):
    # Tables
    @app.get("/api/admin/tables")
    @requires_auth(STAFF_ROLES | {"chef"})
    def admin_tables():
        status = request.args.get("status")
        if status and status != "all":
            rows = db.fetch_all("SELECT * FROM tables WHERE status = %s ORDER BY table_number", (status,))
        else:
            rows = db.fetch_all("SELECT * FROM tables ORDER BY table_number")
        return jsonify({"tables": serialize(rows)})

    @app.post("/api/admin/tables")
    @requires_auth(STAFF_ROLES)
    def admin_create_table():
        values = {"id": new_id(), **clean_table(json_body())}
        try:
            row = _insert("tables", values)
        except pg_errors.UniqueViolation:
            return jsonify({"error": "A table with this number already exists"}), 409
        app.logger.info("table %s created by %s", row["table_number"], current_user_id())
        return jsonify({"success": True, "table": serialize(row)}), 201

    @app.patch("/api/admin/tables/<table_id>")
    @requires_auth(STAFF_ROLES)
    def admin_update_table(table_id: str):
        values = clean_table(json_body(), partial=True)
        if not values:
            return jsonify({"error": "No fields to update"}), 400
        try:
            row = _update("tables", table_id, values)
        except pg_errors.UniqueViolation:
            return jsonify({"error": "A table with this number already exists"}), 409
        if not row:
            return jsonify({"error": "Table not found"}), 404
        return jsonify({"success": True, "table": serialize(row)})

    @app.delete("/api/admin/tables/<table_id>")
    @requires_auth(STAFF_ROLES)
    def admin_delete_table(table_id: str):
        if not db.execute("DELETE FROM tables WHERE id = %s", (table_id,)):
            return jsonify({"error": "Table not found"}), 404
        app.logger.info("table %s deleted by %s", table_id, current_user_id())
        return jsonify({"success": True})

    # Reservations
    @app.post("/api/reservations")
    def create_reservation():
        req = validate_reservation(json_body())
        if req["table_id"]:
            check_table_fits(req["table_id"], req["guest_count"])
        user = optional_user()
        row = _insert("reservations", {"id": new_id(), "user_id": (user or {}).get("sub"), **req})
        app.logger.info("reservation %s for %s guests at %s", row["id"], row["guest_count"], row["reservation_time"])
        return jsonify({"success": True, "reservation": serialize(row)}), 201

    @app.get("/api/user/reservations")
    @requires_auth()
    def my_reservations():
        rows = db.fetch_all(
            "SELECT * FROM reservations WHERE user_id = %s ORDER BY reservation_time DESC",
            (current_user_id(),),
        )
        return jsonify({"reservations": serialize(rows)})

    @app.get("/api/admin/reservations")
    @requires_auth(STAFF_ROLES)
    def admin_reservations():
        where, params = ["TRUE"], []
        status = request.args.get("status")
        if status and status != "all":
            where.append("r.status = %s")
            params.append(status)
        if request.args.get("date"):
            where.append("r.reservation_time >= %s::date AND r.reservation_time < %s::date + INTERVAL '1 day'")
            params.extend([request.args["date"], request.args["date"]])
        rows = db.fetch_all(
            f"""
            SELECT r.*, t.table_number
            FROM reservations r LEFT JOIN tables t ON t.id = r.table_id
            WHERE {" AND ".join(where)}
            ORDER BY r.reservation_time
            """,
            tuple(params),
        )
        return jsonify({"reservations": serialize(rows)})

    @app.patch("/api/admin/reservations/<reservation_id>")
    @requires_auth(STAFF_ROLES)
    def admin_update_reservation(reservation_id: str):
        body = json_body()
        values = {}
        if "status" in body:
            if body["status"] not in RESERVATION_STATUSES:
                return jsonify({"error": "Invalid status"}), 400
            values["status"] = body["status"]
        if "notes" in body:
            values["notes"] = body.get("notes") or None
        if "table_id" in body:
            values["table_id"] = body.get("table_id") or None
        if not values:
            return jsonify({"error": "No fields to update"}), 400
        if values.get("table_id"):
            current = db.fetch_one("SELECT guest_count FROM reservations WHERE id = %s", (reservation_id,))
            if not current:
                return jsonify({"error": "Reservation not found"}), 404
            check_table_fits(values["table_id"], int(current["guest_count"]))
        row = _update("reservations", reservation_id, values)
        if not row:
            return jsonify({"error": "Reservation not found"}), 404
        app.logger.info("reservation %s updated by %s: %s", reservation_id, current_user_id(), sorted(values))
        return jsonify({"success": True, "reservation": serialize(row)})
