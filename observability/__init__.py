"""
Observability for the realtime orchestrator: structured JSON events and the
in-memory event store behind the Control Plane read API.
"""
