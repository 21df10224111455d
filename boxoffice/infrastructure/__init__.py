"""Infrastructure Layer - database access, repositories, logging.

Invariants:
    - SQLAlchemy errors are mapped to core/errors.py types before leaving this layer
    - Repositories return core/records.py snapshots, never ORM instances

Design Decisions:
    - SQL and in-memory repositories implement the same Protocols
"""
