"""
sync — Multi-tenant orchestration.

Modules:
    lease         — per-tenant exclusive leases (in-memory / Redis)
    orchestrator  — sync, publish and maintenance passes
    scheduler     — in-process periodic job runner
"""
