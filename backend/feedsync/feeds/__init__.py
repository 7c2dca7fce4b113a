"""
feeds — Encrypted incident feed access.

Modules:
    decryptor   — envelope parsing & AES-256-CBC decryption
    pulsepoint  — HTTP client with primary/fallback endpoints
    timestamps  — feed timestamp parsing
"""
