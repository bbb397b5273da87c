"""Stateful managers for the orchestrator.

Managers talk to external systems of record (the container engine) and
raise domain exceptions, never ``SystemExit`` -- translating them to exit
codes is the CLI's responsibility.
"""
