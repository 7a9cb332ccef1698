"""
Market Data Aggregator Service
Aggregates quotes and market data from multiple rate-limited providers behind
one cached, single-flight, failure-tolerant interface.
"""

__version__ = "1.0.0"
__author__ = "Market Data Aggregator Team"
__description__ = "Multi-provider market data aggregation service with cascading fallback"
