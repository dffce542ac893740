"""
All the functions to properly build the object hierarchies.

The health checks are owned by their clusters: they are garbage-collected
when the cluster is deleted. The ownership is maintained on every
reconciliation, and the modified body is then persisted as a patch.
"""
import collections.abc
from typing import Any, Iterable, Iterator, Mapping, MutableMapping, Optional, Union, cast

from machinehealth.structs import bodies

K8sObject = MutableMapping[Any, Any]
K8sObjects = Union[K8sObject, Iterable[K8sObject]]


def ensure_owner_reference(
        objs: K8sObjects,
        owner: bodies.RawBody,
) -> None:
    """
    Put an owner reference to the resource(s), replacing any previous one.

    The previous references to the same owner are recognised by the API group,
    kind, and name (not by the uid), so that the re-created owners with
    the same name, or the owners of another API version, do not accumulate.
    """
    owner_ref = bodies.build_owner_reference(owner)
    owner_identity = _identify(owner_ref)
    for obj in _walk(objs):
        refs = obj.setdefault('metadata', {}).setdefault('ownerReferences', [])
        positions = [idx for idx, ref in enumerate(refs) if _identify(ref) == owner_identity]
        if positions:
            refs[positions[0]] = owner_ref
            refs[:] = [ref for idx, ref in enumerate(refs) if idx not in positions[1:]]
        else:
            refs.append(owner_ref)


def label(
        objs: K8sObjects,
        labels: Mapping[str, Optional[str]],
        *,
        forced: bool = False,
) -> None:
    """
    Apply the labels to the object(s).

    Unless forced, only the absent labels are added, and the existing ones
    are kept with their current values.
    """
    for obj in _walk(objs):
        obj_labels = obj.setdefault('metadata', {}).setdefault('labels', {})
        for key, val in labels.items():
            if forced:
                obj_labels[key] = val
            else:
                obj_labels.setdefault(key, val)


def _identify(ref: Mapping[str, Any]) -> tuple:
    api_version = ref.get('apiVersion') or ''
    group = api_version.rsplit('/', 1)[0] if '/' in api_version else ''
    return (group, ref.get('kind'), ref.get('name'))


def _walk(objs: K8sObjects) -> Iterator[K8sObject]:
    if isinstance(objs, collections.abc.MutableMapping):
        yield objs
    elif isinstance(objs, collections.abc.Iterable) and not isinstance(objs, (str, bytes)):
        for obj in objs:
            yield from _walk(cast(K8sObjects, obj))
    else:
        raise TypeError(f"K8s object class is not supported: {type(objs)}")
