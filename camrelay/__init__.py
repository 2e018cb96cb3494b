"""
Remote live-camera relay.

Submodules:
- domain: Session orchestration (registry, sessions, peer links, reconnection, capture).
- schemas: Signaling wire messages, session states, source directory entries.
- services: Transport and media integrations (websockets, aiortc, directory HTTP client).
- shared: Configuration and logging.
- utils: Error taxonomy and ID generation.
"""
