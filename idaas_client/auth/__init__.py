"""
Authentication package for the IDaaS session client.

This package contains the in-memory credential bundle, secure credential
storage and the session manager that keeps them in step.
"""
