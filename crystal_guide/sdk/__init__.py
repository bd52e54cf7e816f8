"""
SDK for Crystal Guide.

Provides programmatic access to stone analysis.
"""

from .vision_client import ApiStats, StoneAnalysisClient, initialize

__all__ = ["ApiStats", "StoneAnalysisClient", "initialize"]
