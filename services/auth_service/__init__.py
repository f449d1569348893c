"""
Auth service - identity of the current user and the credential sent with each generation.
"""

from .credentials import SessionCredentials, get_session_credentials

__all__ = ['SessionCredentials', 'get_session_credentials']
