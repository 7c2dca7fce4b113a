"""
posting — Per-item posting lifecycle and social publishing.

Modules:
    models           — PostingState, PostingRecord
    state_machine    — the only code that mutates posting records
    views            — pending / posted / needs-update / failed queues
    rules            — per-tenant auto-post rules
    formatter        — post text
    facebook_client  — Graph API calls (publish, update, OAuth)
    publisher        — drains the queues for one tenant
"""
