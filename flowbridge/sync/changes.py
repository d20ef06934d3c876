"""
Change detection between last-applied and candidate device state.

State is a nested mapping (cluster -> attribute -> value). A candidate only
names the subtree it wants to change; leaves it does not mention are left
alone.
"""

import copy
from typing import Any, Dict, Mapping


def _same(current: Any, candidate: Any) -> bool:
    # bool is an int subclass; True must not equal 1 here
    if isinstance(current, bool) or isinstance(candidate, bool):
        return type(current) is type(candidate) and current == candidate
    if isinstance(current, Mapping) and isinstance(candidate, Mapping):
        if current.keys() != candidate.keys():
            return False
        return all(_same(current[k], candidate[k]) for k in current)
    if isinstance(current, (list, tuple)) and isinstance(candidate, (list, tuple)):
        return len(current) == len(candidate) and all(
            _same(a, b) for a, b in zip(current, candidate)
        )
    return current == candidate


def diff(current: Mapping[str, Any], candidate: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Return the part of ``candidate`` that differs from ``current``.

    Mappings nested two levels deep (cluster, attribute) are descended into;
    anything below an attribute is compared as a whole value.
    """
    changes: Dict[str, Any] = {}
    for cluster, attributes in candidate.items():
        existing = current.get(cluster)
        if not isinstance(attributes, Mapping) or not isinstance(existing, Mapping):
            if cluster not in current or not _same(existing, attributes):
                changes[cluster] = copy.deepcopy(attributes)
            continue
        changed = {
            name: copy.deepcopy(value)
            for name, value in attributes.items()
            if name not in existing or not _same(existing[name], value)
        }
        if changed:
            changes[cluster] = changed
    return changes


def will_apply(current: Mapping[str, Any], candidate: Mapping[str, Any]) -> bool:
    """True if applying ``candidate`` would change any leaf of ``current``."""
    return bool(diff(current, candidate))


def merge(current: Dict[str, Any], changes: Mapping[str, Any]) -> Dict[str, Any]:
    """Apply ``changes`` to ``current`` in place and return it."""
    for cluster, attributes in changes.items():
        existing = current.get(cluster)
        if isinstance(attributes, Mapping) and isinstance(existing, dict):
            for name, value in attributes.items():
                existing[name] = copy.deepcopy(value)
        else:
            current[cluster] = copy.deepcopy(attributes)
    return current
