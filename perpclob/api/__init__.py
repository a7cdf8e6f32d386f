"""
Admin and market data HTTP API.
"""
