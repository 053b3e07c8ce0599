import json
import re
from typing import Any, Dict, List, Tuple

from .exceptions import InvalidAbiFormat

ABI_ENTRY_TYPES = {"function", "event", "error", "constructor", "fallback", "receive"}
NAMED_ENTRY_TYPES = {"function", "event", "error"}
READ_MUTABILITY = {"view", "pure"}

_TRAILING_COMMA_RE = re.compile(r",\s*([\]}])")
_BARE_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)(\s*:)")


def _correct_json(text: str) -> str:
    """Best-effort repair of JS-style object literals pasted from code."""
    fixed = text.replace("'", '"')
    fixed = _BARE_KEY_RE.sub(r'\1"\2"\3', fixed)
    fixed = _TRAILING_COMMA_RE.sub(r"\1", fixed)
    return fixed


def parse_abi_text(text: Any) -> List[Dict[str, Any]]:
    """
    Parse user-supplied ABI text.

    Strict JSON is tried first, then a lenient pass that accepts single quotes,
    bare keys and trailing commas. Either a bare ABI list or an artifact object
    with an ``abi`` list is accepted.
    """
    if not isinstance(text, str) or not text.strip():
        raise InvalidAbiFormat("ABI text must be a non-empty string.")

    raw = text.strip()
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        try:
            parsed = json.loads(_correct_json(raw))
        except json.JSONDecodeError as exc:
            raise InvalidAbiFormat(f"ABI is not valid JSON: {exc.msg} (line {exc.lineno}).") from exc

    return validate_abi(parsed)


def validate_abi(value: Any) -> List[Dict[str, Any]]:
    if isinstance(value, dict) and isinstance(value.get("abi"), list):
        value = value["abi"]
    if isinstance(value, str):
        # explorers hand back the ABI as a JSON-encoded string
        try:
            value = json.loads(value)
        except json.JSONDecodeError as exc:
            raise InvalidAbiFormat("ABI string is not valid JSON.") from exc
    if not isinstance(value, list):
        raise InvalidAbiFormat("ABI must be a JSON array of entries.")
    if not value:
        raise InvalidAbiFormat("ABI must contain at least one entry.")

    entries: List[Dict[str, Any]] = []
    for position, entry in enumerate(value):
        if not isinstance(entry, dict):
            raise InvalidAbiFormat(f"ABI entry {position} is not an object.")

        entry_type = entry.get("type", "function")
        if entry_type not in ABI_ENTRY_TYPES:
            raise InvalidAbiFormat(f"ABI entry {position} has unknown type '{entry_type}'.")
        if entry_type in NAMED_ENTRY_TYPES:
            name = entry.get("name")
            if not isinstance(name, str) or not name:
                raise InvalidAbiFormat(f"ABI entry {position} ({entry_type}) is missing a name.")
        for key in ("inputs", "outputs"):
            if key in entry and not isinstance(entry[key], list):
                raise InvalidAbiFormat(f"ABI entry {position} has non-list '{key}'.")

        normalized = dict(entry)
        normalized["type"] = entry_type
        entries.append(normalized)

    return entries


def split_read_write(abi: List[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Partition functions into read (view/pure) and write methods."""
    read: List[Dict[str, Any]] = []
    write: List[Dict[str, Any]] = []
    for entry in abi:
        if entry.get("type", "function") != "function":
            continue
        mutability = entry.get("stateMutability")
        if mutability is None:
            # pre-0.5 ABIs only carry the constant flag
            mutability = "view" if entry.get("constant") else "nonpayable"
        if mutability in READ_MUTABILITY:
            read.append(entry)
        else:
            write.append(entry)
    return read, write
