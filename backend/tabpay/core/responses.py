"""Standardized API response helpers.

Every endpoint answers with a ``success`` flag:
    single object: {"success": true, "data": {...}}
    list:          {"success": true, "count": <int>, "data": [...]}
"""

from typing import Any


def item_response(data: Any) -> dict:
    """Wrap a single serialized object."""
    return {"success": True, "data": data}


def list_response(items: list) -> dict:
    """Wrap a list in the standard envelope.

    Args:
        items: The list of serialized items.

    Returns:
        {"success": True, "count": len(items), "data": items}
    """
    return {
        "success": True,
        "count": len(items),
        "data": items,
    }
