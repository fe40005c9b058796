"""
Authentication package for the BizFlow API client.

This package contains the auth coordinator (bearer token attachment and
single-flight token refresh) and secure session storage.
"""
