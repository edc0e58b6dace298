"""Authentication module.

Resolves connection credentials (bearer tokens issued by the directory's
login flow) to participant identities.

Services:
    - IdentityResolver: DuckDB-backed token -> identity lookup.
"""
