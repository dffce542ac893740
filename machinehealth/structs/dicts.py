"""
Safe access to the nested fields of the raw bodies.

The objects can be edited by hand and be malformed: a non-mapping
on the way to a field is treated the same as an absent field.
"""
from typing import Any, Mapping, Optional


def resolve(obj: Optional[Any], path: str, default: Any = None) -> Any:
    """ Get a field by its dotted path, e.g. ``status.nodeRef.name``. """
    for key in path.split('.'):
        if not isinstance(obj, Mapping) or key not in obj:
            return default
        obj = obj[key]
    return obj
