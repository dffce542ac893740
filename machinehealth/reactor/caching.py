"""
In-memory caches of the watched objects with secondary indexes.

Every watched resource kind has its own `Store`, fed by the watch-streams:
the objects are replaced on the listing/addition/modification events,
and discarded on the deletion events. The stores are the only source
of the objects for the reconciliation and for the event routing:
no direct API reads are made for them.

The secondary indexes are projections of the store maintained on every
update: an index function extracts zero or more index values from an object,
and the index keeps both the forward (value-to-keys) and the reverse
(key-to-values) mappings, so that the updates/deletions are O(1)
regardless of the number of objects.

The caches are eventually consistent with the cluster: the consumers must
tolerate stale or missing objects and index entries.
"""
import asyncio
import logging
from typing import Callable, Collection, Dict, FrozenSet, Iterable, Iterator, List, \
                   Mapping, Optional, Set

from machinehealth.structs import bodies, references

logger = logging.getLogger(__name__)

IndexFn = Callable[[bodies.RawBody], Iterable[str]]


class Index:
    """
    A secondary index of one store: index values to the objects' keys.
    """
    __forward: Dict[str, Set[references.ObjectKey]]
    __reverse: Dict[references.ObjectKey, Set[str]]

    def __init__(self) -> None:
        super().__init__()
        self.__forward = {}
        self.__reverse = {}

    def __repr__(self) -> str:
        return repr(self.__forward)

    def __len__(self) -> int:
        return len(self.__forward)

    def __contains__(self, value: object) -> bool:
        return value in self.__forward

    def lookup(self, value: str) -> FrozenSet[references.ObjectKey]:
        return frozenset(self.__forward.get(value, ()))

    def _discard(
            self,
            key: references.ObjectKey,
            values: Optional[Iterable[str]] = None,
    ) -> None:
        if key in self.__reverse:
            values = values if values is not None else self.__reverse[key].copy()
            for value in values:
                keys = self.__forward.get(value, set())
                keys.discard(key)
                if not keys:
                    self.__forward.pop(value, None)

                # One by one -- so that the reverse index is consistent even in case of errors.
                self.__reverse[key].discard(value)

            if not self.__reverse[key]:
                del self.__reverse[key]

    def _replace(
            self,
            key: references.ObjectKey,
            values: Collection[str],
    ) -> None:
        reverse = self.__reverse.setdefault(key, set())
        for value in values:
            self.__forward.setdefault(value, set()).add(key)
            reverse.add(value)

        # Discard from all values that surely do not refer to the object anymore.
        self._discard(key, reverse - set(values))


class Store:
    """
    A cache of the objects of one resource kind.

    The stored objects are shared with all consumers and must not be mutated;
    the consumers that need to modify an object must deep-copy it first.
    """
    __items: Dict[references.ObjectKey, bodies.RawBody]
    __indexers: Dict[str, IndexFn]
    __indices: Dict[str, Index]

    def __init__(
            self,
            resource: references.Resource,
            *,
            namespaces: Collection[references.Namespace] = (None,),
    ) -> None:
        super().__init__()
        self.resource = resource
        self.synced = asyncio.Event()
        self.__unlisted: Set[references.Namespace] = set(namespaces)
        self.__items = {}
        self.__indexers = {}
        self.__indices = {}

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__}: {self.resource}: {len(self.__items)} objects>'

    def __len__(self) -> int:
        return len(self.__items)

    def __iter__(self) -> Iterator[references.ObjectKey]:
        return iter(self.__items)

    def __contains__(self, key: object) -> bool:
        return key in self.__items

    def add_index(self, name: str, fn: IndexFn) -> None:
        """
        Register a secondary index; the already stored objects are indexed too.
        """
        if name in self.__indexers:
            raise ValueError(f"The index {name!r} is already registered for {self.resource}.")
        index = Index()
        for key, body in self.__items.items():
            index._replace(key, list(fn(body)))
        self.__indexers[name] = fn
        self.__indices[name] = index

    def get_index(self, name: str) -> Index:
        try:
            return self.__indices[name]
        except KeyError:
            raise LookupError(f"No index {name!r} is registered for {self.resource}.") from None

    def replace(self, body: bodies.RawBody) -> None:
        key = bodies.get_key(body)
        self.__items[key] = body
        for name, fn in self.__indexers.items():
            self.__indices[name]._replace(key, list(fn(body)))

    def discard(self, body: bodies.RawBody) -> None:
        key = bodies.get_key(body)
        self.__items.pop(key, None)
        for index in self.__indices.values():
            index._discard(key)

    def retain(self, keys: Collection[references.ObjectKey]) -> List[bodies.RawBody]:
        """
        Discard all the objects except the specified ones; return the discarded.

        Used after a re-listing, when the objects deleted while the watch-stream
        was disconnected are not reported as deleted by the new watch-stream.
        """
        vanished = [body for key, body in self.__items.items() if key not in keys]
        for body in vanished:
            self.discard(body)
        return vanished

    def get(self, key: references.ObjectKey) -> Optional[bodies.RawBody]:
        return self.__items.get(key)

    def list(
            self,
            *,
            namespace: references.Namespace = None,
            matching_fields: Optional[Mapping[str, str]] = None,
    ) -> List[bodies.RawBody]:
        """
        List the objects, optionally restricted to a namespace and index values.

        All the specified index values must match (i.e. they are ANDed).
        The result is ordered by the objects' keys for reproducibility.
        """
        keys: Optional[Set[references.ObjectKey]] = None
        for name, value in (matching_fields or {}).items():
            found = self.get_index(name).lookup(value)
            keys = set(found) if keys is None else keys & found
        candidates = self.__items.keys() if keys is None else keys
        selected = [key for key in candidates
                    if key in self.__items
                    if namespace is None or key.namespace == namespace]
        return [self.__items[key] for key in sorted(selected, key=_sorting_key)]

    def mark_synced(self, namespace: references.Namespace = None) -> None:
        """
        Note the first listing in a namespace; the store is synced once all are listed.

        With several namespaces served, the objects of one are not a full picture.
        """
        self.__unlisted.discard(namespace)
        if not self.__unlisted:
            self.synced.set()


class Cache(Mapping[references.Resource, Store]):
    """
    The caches of all the watched resource kinds of one cluster.
    """

    def __init__(
            self,
            resources: Iterable[references.Resource],
            *,
            namespaces: Collection[references.Namespace] = (None,),
    ) -> None:
        super().__init__()
        self.__stores = {resource: Store(resource, namespaces=namespaces) for resource in resources}

    def __repr__(self) -> str:
        return repr(list(self.__stores.values()))

    def __len__(self) -> int:
        return len(self.__stores)

    def __iter__(self) -> Iterator[references.Resource]:
        return iter(self.__stores)

    def __getitem__(self, resource: references.Resource) -> Store:
        return self.__stores[resource]

    def register_index(self, resource: references.Resource, name: str, fn: IndexFn) -> None:
        self[resource].add_index(name, fn)

    def get_obj(
            self,
            resource: references.Resource,
            key: references.ObjectKey,
    ) -> Optional[bodies.RawBody]:
        return self[resource].get(key)

    def list_objs(
            self,
            resource: references.Resource,
            *,
            namespace: references.Namespace = None,
            matching_fields: Optional[Mapping[str, str]] = None,
    ) -> List[bodies.RawBody]:
        return self[resource].list(namespace=namespace, matching_fields=matching_fields)

    @property
    def synced(self) -> bool:
        return all(store.synced.is_set() for store in self.__stores.values())

    async def wait_for_sync(self) -> None:
        """ Wait until every resource is listed in every served namespace. """
        for store in self.__stores.values():
            await store.synced.wait()


def _sorting_key(key: references.ObjectKey) -> tuple:
    return (key.namespace or '', key.name)
