"""
Document helpers: parse response bodies into JSON trees, serialize request
bodies, and walk parsed trees without tripping over missing keys.
"""

import json
from typing import Any, Union
from urllib.parse import urlencode

from .errors import DocumentError


def parse(body: Union[bytes, str]) -> Any:
    """
    Parse a response body into a JSON document.

    Raises:
        DocumentError: If the body is empty or not valid JSON.
    """
    if not body:
        raise DocumentError("Empty response body")
    try:
        return json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        raise DocumentError(f"Invalid JSON: {e}") from e


def serialize(params: Any) -> bytes:
    """Serialize structured parameters into a UTF-8 JSON body."""
    return json.dumps(params, ensure_ascii=False).encode("utf-8")


def serialize_form(params: dict) -> bytes:
    """Serialize flat parameters into an url-encoded form body, skipping None values."""
    return urlencode({k: v for k, v in params.items() if v is not None}).encode("utf-8")


def dig(document: Any, *path: Union[str, int], default: Any = None) -> Any:
    """
    Walk a parsed document by keys/indices.
    Returns default if any step is missing or the value is null.
    """
    node = document
    for key in path:
        try:
            node = node[key]
        except (KeyError, IndexError, TypeError):
            return default
        if node is None:
            return default
    return node
