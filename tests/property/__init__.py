# tests/property/__init__.py
"""Property-based tests for tokenflow.

Property-based testing validates invariants that must hold for ALL inputs,
not just the specific examples we think of. For a replayable simulation,
determinism and bounded memory are the invariants everything else rests on.

Test categories:
- test_engine_properties: log bounds, FIFO firing, lineage, determinism, replay
- test_formula_properties: evaluator totality and arithmetic agreement
"""
