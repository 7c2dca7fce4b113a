"""
incidents — Incident model, normalisation and reconciliation.

Modules:
    models      — Incident, unit status, call type category
    call_types  — dispatch code → description/category table
    normalizer  — address canonicalisation & change detection
    reconciler  — snapshot → store diff, stale close, archive
    grouping    — consolidated (grouped) incident projection
"""
