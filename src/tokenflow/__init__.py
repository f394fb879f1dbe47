"""
Tokenflow: a discrete-event token-flow simulation engine.

Typed nodes (sources, queues, process nodes, sinks) exchange immutable,
lineage-tracked tokens on a discrete tick clock. Every run can be recorded
as a log of external events and replayed deterministically, against the
original model or an upgraded one.
"""

__version__ = "0.1.0"
