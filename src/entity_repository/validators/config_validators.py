import json
from typing import Iterable

MUTATION_KINDS = ("create", "update", "delete")


def to_uppercase(value: str | None) -> str | None:
    """
    Converts a string to uppercase if it's not None.
    """
    if value is None:
        return None
    return value.upper()


def to_lowercase(value: str | None) -> str | None:
    """
    Converts a string to lowercase if it's not None.
    """
    if value is None:
        return None
    return value.lower()


def normalize_mutation_kinds(value: str | Iterable[str] | None) -> list[str]:
    """
    Normalize a cache "clear on" value into an ordered, de-duplicated list.

    Accepts a JSON list or a comma separated string (as it arrives from an env
    var) or any iterable of names. Unknown names are left in place so pydantic
    reports them.
    """
    if value is None:
        return []
    if isinstance(value, str):
        text = value.strip()
        value = json.loads(text) if text.startswith("[") else text.split(",")

    kinds: list[str] = []
    for item in value:
        kind = str(item).strip().lower()
        if kind and kind not in kinds:
            kinds.append(kind)
    return kinds
