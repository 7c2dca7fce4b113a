"""
storage — Persistence for tenants, incidents and weather alerts.

    base    — SyncStore interface
    memory  — in-process store (tests, single-node dev)
    sql     — SQLAlchemy async store
"""
