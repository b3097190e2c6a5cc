"""
LiveKit glue for the realtime orchestrator.

Realtime I/O only: the data-channel transport that carries envelopes
between the room and the orchestrator, and the worker entrypoint that runs
one orchestrated session per room, plus the client that reports those
sessions to the Control Plane. No conversation logic lives here.
"""
