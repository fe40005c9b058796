"""
Shared building blocks for the BizFlow API client.

This package contains the exception taxonomy, data models, abstract
interfaces and logging configuration used by the client package.
"""
