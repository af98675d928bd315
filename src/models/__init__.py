"""
Models package — export all SQLAlchemy models.
"""

from src.models.base import Base
from src.models.marketplace_listing import MarketplaceListing

__all__ = ["Base", "MarketplaceListing"]
