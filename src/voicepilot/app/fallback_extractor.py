import json
import re
from typing import Optional

# Fenced { ... } block, optionally tagged json; first match wins
_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)

FUNCTION_NAME_KEYS = ("function_name", "functionName", "name")


def extract_function_name(text: str) -> Optional[str]:
    """
    Recover a function name from a free-text model reply.

    Some replies describe the call in a fenced JSON block instead of emitting
    a structured function call. Returns None when there is no block, the block
    is not a JSON object, or none of the known keys is present.
    """
    if not text:
        return None

    match = _FENCED_JSON.search(text)
    if not match:
        return None

    try:
        payload = json.loads(match.group(1))
    except json.JSONDecodeError:
        return None

    if not isinstance(payload, dict):
        return None

    for key in FUNCTION_NAME_KEYS:
        if key in payload and payload[key] is not None:
            return str(payload[key])
    return None
