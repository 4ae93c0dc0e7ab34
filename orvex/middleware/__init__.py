"""Middleware package for Orvex."""
from orvex.middleware.auth import init_auth

__all__ = ['init_auth']
