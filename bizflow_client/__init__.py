"""
BizFlow API client.

Authenticated, tenant-aware HTTP client for the BizFlow business suite API.
"""

__version__ = "1.0.0"
