"""Core domain package for pagerbuddy.

Core contains deduplication, routing, response aggregation and delivery
scheduling without any Telegram, HTTP or storage-specific code.
"""
