"""Services layer: Helix client, segmentation engine, reconciliation and aggregates.

Import from the submodules directly; the EventSub package depends on them.
"""
