"""Shared test helpers (imported by test modules, not fixtures)."""
from signalforge.infrastructure.db import SessionLocal


def rows(model, **filters):
    """Read committed rows through a short-lived session."""
    with SessionLocal() as s:
        return s.query(model).filter_by(**filters).all()


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json body")
        return self._payload
