"""
Authentication package: Google sign-in, session assertions and passwords.
"""
