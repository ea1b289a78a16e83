"""
Canonical artifact store: validation, identity resolution and upsert.
"""
