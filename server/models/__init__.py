from .integrations import Integration

__all__ = [
    "Integration",
]
