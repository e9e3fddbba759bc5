"""Deep merge for partial state updates.

Dicts merge recursively key by key. Everything else (lists, scalars, None)
in the patch replaces the existing value wholesale; lists are never
concatenated or diffed.
"""

import copy
from typing import Any


def deep_merge(base: Any, patch: Any) -> Any:
    """
    Merge ``patch`` into ``base`` and return the result.

    Neither input is mutated; the result shares no mutable structure with
    either argument.

    Args:
        base: Existing value
        patch: Partial value to apply

    Returns:
        Merged value
    """
    if not isinstance(base, dict) or not isinstance(patch, dict):
        return copy.deepcopy(patch)

    merged = copy.deepcopy(base)
    for key, value in patch.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged
