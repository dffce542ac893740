"""
The reactor groups all modules to watch & reconcile the health checks.

The low-level events are the kubernetes watch streams, received on every
object change, both in the management cluster and in the target clusters.

The high-level activity is the level-triggered reconciliation of the health
checks affected by those changes: as requested via a de-duplicating queue.
"""
