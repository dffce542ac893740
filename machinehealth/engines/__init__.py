"""
Engines are things that run around the reconciliation, but are not part of it.

E.g. the k8s-event posting, the per-object logging, the liveness endpoint.
"""
