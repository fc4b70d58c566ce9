"""
Users service package.

Exposes the REST surface for User records owned by Clients, backed by a
SQLAlchemy store and a tag-aware response cache.
"""
