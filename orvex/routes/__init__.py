"""Routes package for Orvex."""
from orvex.routes.api import api_bp

__all__ = ['api_bp']
