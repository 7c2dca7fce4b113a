"""Tenant configuration: feeds, page connection, auto-post rules."""
