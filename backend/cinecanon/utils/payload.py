"""
payload.py

Normalization of values crossing into persisted JSON blobs (prediction cache
entries, ledger metadata, job args). Everything is converted recursively into
plain dicts, lists, strings, floats, ints, bools and None so the stored
format does not depend on the database engine or on Python types.
"""
import dataclasses
import enum
from datetime import date, datetime
from decimal import Decimal
from typing import Any

import numpy as np
from pydantic import BaseModel


def to_plain(value: Any) -> Any:
    """Recursively convert ``value`` into a JSON-compatible structure.

    - Decimal and numpy scalars -> float/int
    - date/datetime -> ISO string
    - Enum -> its value
    - pydantic models, dataclasses, SQLAlchemy rows -> dict
    - tuples, sets, lists -> list
    - dict keys -> str
    """
    if isinstance(value, enum.Enum):
        return to_plain(value.value)
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, BaseModel):
        return to_plain(value.model_dump())
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return to_plain(dataclasses.asdict(value))
    if isinstance(value, dict):
        return {k if isinstance(k, str) else str(to_plain(k)): to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_plain(v) for v in value]
    mapper = getattr(value, "__mapper__", None)
    if mapper is not None:
        return {attr.key: to_plain(getattr(value, attr.key, None)) for attr in mapper.column_attrs}
    if hasattr(value, "__dict__"):
        return {k: to_plain(v) for k, v in vars(value).items() if not k.startswith("_")}
    return str(value)


def normalize_payload(payload: dict) -> dict:
    """Ensures consistent key casing and plain values."""
    return {str(k).lower(): to_plain(v) for k, v in (payload or {}).items()}
