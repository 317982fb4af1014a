"""Shared fixtures: a scripted stand-in for the Postgres pool and a Flask test client.

The fake connection answers each SQL statement from rules registered with
``fake_db.on(fragment, rows)``; the first rule whose fragment appears in the
statement wins. Every statement and its parameters are recorded so tests can
assert on what was written.
"""
import re
from contextlib import contextmanager

import pytest

from storefront import db
from storefront.auth import token_for_user
from storefront.cache import cache_clear


def _squash(sql: str) -> str:
    return re.sub(r"\s+", " ", sql).strip()


class _Rule:
    def __init__(self, fragment, rows, rowcount, once, error):
        self.fragment = _squash(fragment)
        self.rows = rows
        self.rowcount = rowcount
        self.once = once
        self.error = error


class FakeCursor:
    def __init__(self, fake):
        self._fake = fake
        self._rows = []
        self.rowcount = -1

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        sql = _squash(sql)
        self._fake.queries.append((sql, params))
        rule = self._fake.match(sql)
        if rule is None:
            self._rows, self.rowcount = [], 0
            return self
        if rule.error is not None:
            raise rule.error
        rows = rule.rows(sql, params) if callable(rule.rows) else rule.rows
        self._rows = [dict(r) for r in rows or []]
        self.rowcount = rule.rowcount if rule.rowcount is not None else len(self._rows)
        return self

    def fetchone(self):
        return self._rows.pop(0) if self._rows else None

    def fetchall(self):
        rows, self._rows = self._rows, []
        return rows


class FakeConnection:
    closed = False

    def __init__(self, fake):
        self._fake = fake

    def cursor(self, row_factory=None):
        return FakeCursor(self._fake)

    def commit(self):
        self._fake.commits += 1

    def rollback(self):
        self._fake.rollbacks += 1


class FakeDB:
    def __init__(self):
        self.rules = []
        self.queries = []
        self.commits = 0
        self.rollbacks = 0
        self.connection = FakeConnection(self)

    def on(self, fragment, rows=None, rowcount=None, once=False, error=None):
        self.rules.append(_Rule(fragment, rows, rowcount, once, error))
        return self

    def match(self, sql):
        for rule in self.rules:
            if rule.fragment in sql:
                if rule.once:
                    self.rules.remove(rule)
                return rule
        return None

    def executed(self, fragment):
        """Parameters of every recorded statement containing ``fragment``."""
        fragment = _squash(fragment)
        return [params for sql, params in self.queries if fragment in sql]


@pytest.fixture(autouse=True)
def _isolated(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret-key-with-enough-length-for-hs256")
    for key in (
        "STRIPE_SECRET_KEY", "RESEND_API_KEY", "FACEBOOK_PIXEL_ID", "FACEBOOK_CONVERSIONS_API_TOKEN",
        "GOOGLE_API_KEY", "REVALIDATE_SECRET", "ADMIN_EMAILS", "ADMIN_EMAIL_DOMAIN",
        "FEATURE_REVIEWS", "FEATURE_WISHLIST", "FEATURE_GUEST_CHECKOUT", "LOG_TIMING",
    ):
        monkeypatch.delenv(key, raising=False)
    cache_clear()
    yield
    cache_clear()


@pytest.fixture
def fake_db(monkeypatch):
    fake = FakeDB()

    @contextmanager
    def _get_connection():
        try:
            yield fake.connection
        except Exception:
            fake.connection.rollback()
            raise

    monkeypatch.setattr(db, "get_connection", _get_connection)
    return fake


@pytest.fixture
def app(monkeypatch, fake_db):
    monkeypatch.setattr(db, "init_pool", lambda: None)
    from storefront.app import create_app

    application = create_app()
    application.config.update(TESTING=True)
    return application


@pytest.fixture
def client(app):
    return app.test_client()


def bearer(role="customer", user_id="user-1", email="ayesha@example.com", name="Ayesha Rahman"):
    token = token_for_user({"id": user_id, "email": email, "name": name, "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def customer_headers():
    return bearer()


@pytest.fixture
def admin_headers():
    return bearer(role="admin", user_id="admin-1", email="owner@example.com", name="Owner")
