"""
JSON merge-patches (RFC 7386): field overrides, with ``None`` for deletions.
"""
import copy
from typing import Any, Dict, Mapping


class Patch(Dict[str, Any]):
    """ A merge-patch of an object, ready to be sent as is. """


def build(original: Mapping[str, Any], modified: Mapping[str, Any]) -> Patch:
    """
    Build a merge-patch that turns the original object into the modified one.

    The lists are replaced as a whole, as merge-patches do anyway.
    """
    if not isinstance(original, Mapping) or not isinstance(modified, Mapping):
        raise ValueError("Patching a root of an object is impossible.")
    return Patch(_merge_patch(original, modified))


def _merge_patch(old: Mapping[str, Any], new: Mapping[str, Any]) -> Dict[str, Any]:
    patch: Dict[str, Any] = {}
    for key in {**old, **new}:
        a, b = old.get(key), new.get(key)
        if a == b:
            continue
        if isinstance(a, Mapping) and isinstance(b, Mapping):
            subpatch = _merge_patch(a, b)
            if subpatch:
                patch[key] = subpatch
        else:
            patch[key] = copy.deepcopy(b)
    return patch
