"""
VPN profile provisioning.
"""
