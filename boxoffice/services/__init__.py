"""Services Layer - orchestration of reservation, issuance, rate limiting and metrics.

Invariants:
    - Services talk to storage only through core/repository_protocols.py
    - Stateful services (limiters, metrics, slow-query log) are instances, never module globals

Design Decisions:
    - One service per concern, wired together by services/container.py
"""
