"""Persistence for user identities (in-memory for dev/tests, Postgres in production)."""
