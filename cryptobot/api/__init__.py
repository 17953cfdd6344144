"""HTTP API for the dashboard."""

from .context import AppContext, build_context
from .server import CONTEXT_KEY, create_app

__all__ = ['AppContext', 'CONTEXT_KEY', 'build_context', 'create_app']
