"""
All the structures coming from/to the Kubernetes API.

The objects are kept as plain JSON-decoded dicts, as received from the API.
The typed dicts below only declare the fields used by the controller itself;
all other fields are carried around untouched and are not type-checked.

A few accessors extract the well-known fields in the "safe" way: if a field
is absent or corrupted (e.g. by a manual edit), it is treated as absent.
"""
import datetime
from typing import Any, List, Mapping, Optional, Union, cast

import iso8601
from typing_extensions import Literal, TypedDict

from machinehealth.structs import dicts, references

Labels = Mapping[str, str]
Annotations = Mapping[str, str]

# ``None`` is used for the listing, when the pseudo-watch-stream is simulated.
RawInputType = Literal[None, 'ADDED', 'MODIFIED', 'DELETED', 'ERROR']
RawEventType = Literal[None, 'ADDED', 'MODIFIED', 'DELETED']


class RawMeta(TypedDict, total=False):
    uid: str
    name: str
    namespace: str
    generation: int
    labels: Labels
    annotations: Annotations
    ownerReferences: List["OwnerReference"]
    resourceVersion: str
    deletionTimestamp: str
    creationTimestamp: str


class RawBody(TypedDict, total=False):
    apiVersion: str
    kind: str
    metadata: RawMeta
    spec: Mapping[str, Any]
    status: Mapping[str, Any]


# A special payload for type==ERROR (this is not a connection or client error).
class RawError(TypedDict, total=False):
    apiVersion: str     # usually: Literal['v1']
    kind: str           # usually: Literal['Status']
    metadata: Mapping[Any, Any]
    code: int
    reason: str
    status: str
    message: str


# As received from the stream before processing the errors and special cases.
class RawInput(TypedDict, total=True):
    type: RawInputType
    object: Union[RawBody, RawError]


# As passed further after processing the errors and special cases.
class RawEvent(TypedDict, total=True):
    type: RawEventType
    object: RawBody


class ObjectReference(TypedDict, total=False):
    apiVersion: str
    kind: str
    namespace: Optional[str]
    name: str
    uid: str


class OwnerReference(TypedDict, total=False):
    controller: bool
    blockOwnerDeletion: bool
    apiVersion: str
    kind: str
    name: str
    uid: str


def get_key(body: RawBody) -> references.ObjectKey:
    namespace = body.get('metadata', {}).get('namespace')
    name = body.get('metadata', {}).get('name')
    if not name:
        raise ValueError(f"The object has no name: {body!r}")
    return references.ObjectKey(cast(references.Namespace, namespace or None), name)


def get_labels(body: RawBody) -> Labels:
    labels = dicts.resolve(body, 'metadata.labels', None)
    return labels if isinstance(labels, Mapping) else {}


def get_annotations(body: RawBody) -> Annotations:
    annotations = dicts.resolve(body, 'metadata.annotations', None)
    return annotations if isinstance(annotations, Mapping) else {}


def get_creation_time(body: RawBody) -> Optional[datetime.datetime]:
    value = dicts.resolve(body, 'metadata.creationTimestamp', None)
    return parse_time(value) if value else None


def parse_time(value: str) -> datetime.datetime:
    """
    Parse a Kubernetes timestamp into a timezone-aware datetime.

    Kubernetes always renders the timestamps in UTC with a "Z" suffix,
    but manually crafted objects can have any RFC3339 offset.
    """
    return iso8601.parse_date(value, default_timezone=datetime.timezone.utc)


def build_object_reference(
        body: RawBody,
) -> ObjectReference:
    """
    Construct an object reference for the events.

    Keep in mind that some fields can be absent: e.g. ``namespace``
    for cluster resources, or e.g. ``apiVersion`` for ``kind: Node``, etc.
    """
    ref = dict(
        apiVersion=body.get('apiVersion'),
        kind=body.get('kind'),
        name=body.get('metadata', {}).get('name'),
        uid=body.get('metadata', {}).get('uid'),
        namespace=body.get('metadata', {}).get('namespace'),
    )
    return cast(ObjectReference, {key: val for key, val in ref.items() if val})


def build_owner_reference(
        body: RawBody,
        *,
        controller: bool = False,
        block_owner_deletion: bool = False,
) -> OwnerReference:
    """
    Construct an owner reference object for the parent-children relationships.

    The ownership here is informational and for garbage collection only:
    by default, the owner is neither a controller nor a blocker of deletion.
    """
    ref = dict(
        controller=controller,
        blockOwnerDeletion=block_owner_deletion,
        apiVersion=body.get('apiVersion'),
        kind=body.get('kind'),
        name=body.get('metadata', {}).get('name'),
        uid=body.get('metadata', {}).get('uid'),
    )
    return cast(OwnerReference, {key: val for key, val in ref.items() if val})
