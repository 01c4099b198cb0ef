"""
API Routers
"""

from app.routers import pipeline

__all__ = ["pipeline"]
