"""
Feature modules live under this package.

Each module owns its models, store and routes, while reusing platform
primitives (auth, RBAC, audit, DB session) from app.closet.
"""
