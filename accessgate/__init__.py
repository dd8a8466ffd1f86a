"""accessgate: access-control decision engine combining RBAC, ABAC and statement policies."""

__version__ = "0.1.0"
