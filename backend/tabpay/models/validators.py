"""Model-level validation utilities for data integrity.

Enforce business rules at the ORM level, so invalid amounts never reach the
database regardless of which endpoint or service writes them.
"""

from decimal import Decimal


def non_negative(key: str, value):
    """Validate that a numeric value is >= 0."""
    if value is not None:
        v = Decimal(str(value)) if not isinstance(value, Decimal) else value
        if v < 0:
            raise ValueError(f"{key} cannot be negative, got {value}")
    return value


def positive(key: str, value):
    """Validate that a numeric value is > 0."""
    if value is not None:
        v = Decimal(str(value)) if not isinstance(value, Decimal) else value
        if v <= 0:
            raise ValueError(f"{key} must be positive, got {value}")
    return value


def validate_order_lines(key: str, value):
    """Validate the JSON line list of an order: item_id, quantity >= 1, price >= 0."""
    if not isinstance(value, list):
        raise ValueError(f"{key} must be a list, got {type(value).__name__}")
    for i, line in enumerate(value):
        if not isinstance(line, dict):
            raise ValueError(f"{key}[{i}] must be a dict, got {type(line).__name__}")
        if not line.get("item_id"):
            raise ValueError(f"{key}[{i}].item_id is required")
        positive(f"{key}[{i}].quantity", line.get("quantity"))
        non_negative(f"{key}[{i}].price", line.get("price"))
    return value
