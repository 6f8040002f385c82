"""Typed metadata maps.

Lots, events and preferences may carry a flat key-value map of scalars.
The map is validated once at the storage boundary, on write and on read,
instead of being parsed ad hoc wherever it is used.
"""

import json
from typing import Any, Optional, Union

from pydantic import StrictBool, StrictFloat, StrictInt, StrictStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from src.tax_lots.errors import MalformedMetadata

MetadataValue = Union[StrictBool, StrictInt, StrictFloat, StrictStr, None]
Metadata = dict[str, MetadataValue]

_adapter = TypeAdapter(Metadata)


def validate_metadata(value: Optional[dict[str, Any]]) -> Optional[Metadata]:
    """Validate an in-memory metadata map.

    Raises:
        MalformedMetadata: If the value is not a flat map of scalars.
    """
    if value is None:
        return None
    try:
        return _adapter.validate_python(value)
    except PydanticValidationError as exc:
        raise MalformedMetadata(
            f"Metadata must be a flat map of scalar values: {exc.errors()[0]['msg']}"
        ) from exc


def parse_metadata(raw: Optional[str]) -> Optional[Metadata]:
    """Parse stored metadata JSON.

    Empty or missing text yields None. Anything else must decode to a
    flat map of scalars.

    Raises:
        MalformedMetadata: On invalid JSON or an invalid shape.
    """
    if raw is None or raw == "":
        return None
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise MalformedMetadata(f"Stored metadata is not valid JSON: {exc.msg}", raw=raw) from exc
    if not isinstance(decoded, dict):
        raise MalformedMetadata("Stored metadata must be a JSON object", raw=raw)
    return validate_metadata(decoded)


def dump_metadata(value: Optional[dict[str, Any]]) -> Optional[str]:
    """Validate and serialise metadata for storage."""
    validated = validate_metadata(value)
    if validated is None:
        return None
    return json.dumps(validated, sort_keys=True)
