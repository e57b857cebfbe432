"""
API module boundary for the intake service.

Design intent:
- Keep HTTP/WebSocket handlers thin; all session logic lives in internal_core.
- Validate every client payload at the boundary before it reaches the registry.
"""
