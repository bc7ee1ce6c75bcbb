"""Privacy-friendly page view and event analytics."""
from .app import create_app, init_analytics

__all__ = ["create_app", "init_analytics"]
