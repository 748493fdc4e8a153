"""Stringification of Terraform and YAML values for env vars, Secrets and status."""

import json
from typing import Any


def interface_to_string(value: Any) -> str:
    """
    Stringify an output, variable or credential value.

    Strings pass through, booleans become true/false, integral numbers lose
    any trailing .0, everything else is compact JSON with sorted keys.
    """
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    return json.dumps(value, sort_keys=True, separators=(",", ":"))
