"""
Feature modules live under this package.

Each module owns its models, rules and routes while reusing the platform
primitives (auth, RBAC, audit, notifications, DB session).
"""
