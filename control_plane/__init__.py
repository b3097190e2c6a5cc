"""
Control Plane for the realtime orchestrator.

HTTP API over live sessions: list and inspect sessions, read transcripts
with their guardrail verdicts, query structured events and disconnect a
session. LiveKit workers report their sessions here over HTTP. Holds no
conversation logic of its own.
"""
