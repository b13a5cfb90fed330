"""
api package

HTTP surface: trigger endpoints, cache stats and cached reads.
"""
from .app import create_app

__all__ = ['create_app']
