"""
Authentication package for the DocFiscal client.

This package contains the credential lifecycle: secure token storage,
expiry evaluation, single-flight token refresh and the facade consumed by
the rest of the application.
"""
