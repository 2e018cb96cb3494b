"""Relay domain: sessions, peer links, capture, reconnection and the registry."""
