"""Core Layer - pure domain logic: pricing, signing, pagination, errors.

Invariants:
    - No module in core/ imports from services/, api/, infrastructure/, or db/
    - No IO; repository contracts are declared here, not implemented

Design Decisions:
    - Functional core separated from the imperative shell (services + infrastructure)
"""
