"""
CTFd single sign-on handoff.
"""
