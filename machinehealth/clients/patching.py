from typing import Optional

from machinehealth.clients import auth, errors
from machinehealth.structs import bodies, patches, references

MERGE_PATCH = {'Content-Type': 'application/merge-patch+json'}


@auth.authenticated
async def patch_obj(
        *,
        resource: references.Resource,
        namespace: references.Namespace,
        name: str,
        patch: patches.Patch,
        context: auth.APIContext,
) -> Optional[bodies.RawBody]:
    """
    Apply a merge-patch; return the patched body, or ``None`` if the object is gone.

    With a status subresource, the main endpoint ignores the status, so
    the status goes to the subresource in a separate request. The returned
    body then contains only the parts that were actually patched.
    """
    body_patch = dict(patch)
    status_patch = body_patch.pop('status', None) if 'status' in resource.subresources else None
    patched: bodies.RawBody = {}
    try:
        if body_patch:
            url = resource.get_url(server=context.server, namespace=namespace, name=name)
            response = await context.session.patch(url, headers=MERGE_PATCH, json=body_patch)
            patched = await errors.parse_response(response)
        if status_patch:
            url = resource.get_url(server=context.server, namespace=namespace, name=name,
                                   subresource='status')
            response = await context.session.patch(url, headers=MERGE_PATCH,
                                                   json={'status': status_patch})
            patched['status'] = (await errors.parse_response(response)).get('status')
    except errors.APINotFoundError:
        return None
    return patched
