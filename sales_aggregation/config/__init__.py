"""
Sales Aggregation Engine
Configuration Module
"""
from .settings import AggregationSettings, Settings, get_settings

__all__ = ["AggregationSettings", "Settings", "get_settings"]
