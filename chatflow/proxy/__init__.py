"""
Gateway package: provider adapters, OAuth token managers and the HTTP server.
"""
