from typing import Any, List, Tuple

from machinehealth.clients import auth, errors
from machinehealth.structs import bodies, references


@auth.authenticated
async def read_obj(
        *,
        resource: references.Resource,
        namespace: references.Namespace,
        name: str,
        default: Any = None,
        context: auth.APIContext,
) -> Any:
    """ Read an object, e.g. a kubeconfig secret; the default is for the absent ones. """
    url = resource.get_url(server=context.server, namespace=namespace, name=name)
    try:
        return await errors.parse_response(await context.session.get(url))
    except errors.APINotFoundError:
        return default


@auth.authenticated
async def list_objs_rv(
        *,
        resource: references.Resource,
        namespace: references.Namespace,
        context: auth.APIContext,
) -> Tuple[List[bodies.RawBody], str]:
    """
    List the objects with the list's resource version to start watching from.

    The listed items have no ``kind`` and ``apiVersion``: the stores and
    the events need them, so they are taken from the list itself.
    """
    url = resource.get_url(server=context.server, namespace=namespace)
    listing = await errors.parse_response(await context.session.get(url))

    list_kind: str = listing.get('kind', '')
    item_kind = list_kind[:-len('List')] if list_kind.endswith('List') else list_kind
    items: List[bodies.RawBody] = listing.get('items') or []
    for item in items:
        if item_kind:
            item.setdefault('kind', item_kind)
        if 'apiVersion' in listing:
            item.setdefault('apiVersion', listing['apiVersion'])
    return items, listing.get('metadata', {}).get('resourceVersion')
