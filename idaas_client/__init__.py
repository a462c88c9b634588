"""
IDaaS session client.

Client-side session management for an identity service: login, single
sign-on challenges, access token renewal and secure credential storage.
"""

from idaas_client.auth.session_manager import SessionManager
from idaas_client.api_client import IDaaSAPIClient
from idaas_client.config import ClientConfiguration

__all__ = ['SessionManager', 'IDaaSAPIClient', 'ClientConfiguration']
