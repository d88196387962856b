"""
Inbound webhook authentication.

Verifies provider signatures and replay windows before any payload is decoded.
"""
