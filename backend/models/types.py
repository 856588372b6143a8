"""Shared SQLAlchemy column types used across ORM models."""

from __future__ import annotations

import json
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.types import Numeric, Text, TypeDecorator


class PreciseFloat(TypeDecorator):
    """Persist float-like values through Decimal-backed NUMERIC storage.

    Budget counters are incremented in place many times a day; Decimal
    storage keeps ``spent`` equal to the exact sum of approved sizes
    instead of accumulating binary float drift.
    """

    impl = Numeric(24, 12, asdecimal=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect):
        if value is None:
            return None
        if isinstance(value, Decimal):
            return value
        try:
            return Decimal(str(value))
        except (InvalidOperation, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid numeric value for PreciseFloat: {value!r}") from exc

    def process_result_value(self, value: Any, dialect):
        if value is None:
            return None
        return float(value)


class JSONList(TypeDecorator):
    """A list serialized to JSON text (outcome labels, prices, order ids)."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Any, dialect):
        if value is None:
            return None
        if isinstance(value, str):
            # Already-encoded payloads pass through untouched
            return value
        return json.dumps(list(value), default=str)

    def process_result_value(self, value: Any, dialect):
        if value is None or value == "":
            return []
        try:
            parsed = json.loads(value)
        except (TypeError, ValueError):
            return []
        return parsed if isinstance(parsed, list) else []
