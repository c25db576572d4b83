"""
Real-Time Sales Aggregation Engine
"""

__version__ = "1.0.0"
