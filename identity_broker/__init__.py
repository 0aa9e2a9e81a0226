"""
Campus Identity Broker.

OAuth 2.0 / OpenID Connect authorization server that signs students in with
their institutional Google Workspace account and hands the identity on to
Moodle and CTFd.
"""

__version__ = "1.0.0"
