"""
LiveKit Agents worker entrypoint.

One job per room: the worker joins the room, resolves the session id and
agent set from the dispatch metadata and runs one orchestrated session over
the room's data channel until the room closes. Audio stays between the user
and the realtime model bridge; this worker only sees events. When
CONTROL_PLANE_URL is set the session is reported to the Control Plane while
it runs.

Usage:
    python -m voice_pipeline.agent dev
"""
import asyncio
from typing import Optional

from livekit.agents import AutoSubscribe, JobContext, WorkerOptions, cli

from logging_setup import get_logger, Component, setup_logging
from orchestrator.agents import load_agent_set
from orchestrator.config import get_config
from orchestrator.errors import TransportError
from orchestrator.session import build_session
from .context import build_dispatch_context
from .control_plane_client import SessionReporter
from .transport import LiveKitDataChannel

logger = get_logger(Component.VOICE_PIPELINE)

# Simulated first user turn so the initial agent greets without waiting for speech
GREETING_TRIGGER = "hi"


async def entrypoint(ctx: JobContext):
    """
    Agent entrypoint, called by the LiveKit Agents framework for each dispatched room.
    """
    await ctx.connect(auto_subscribe=AutoSubscribe.SUBSCRIBE_NONE)

    dispatch_ctx = build_dispatch_context(
        room_name=ctx.room.name or "unknown",
        job_metadata=getattr(ctx.job, "metadata", None),
    )
    session_logger = logger.with_session(dispatch_ctx.session_id)

    config = get_config()
    agent_set_name = dispatch_ctx.agent_set or config.agent_set
    session_logger.info(
        "Orchestrator job starting",
        room=ctx.room.name,
        job_id=ctx.job.id,
        agent_set=agent_set_name,
    )

    channel = LiveKitDataChannel(ctx.room, topic=config.livekit_data_topic, url=config.livekit_url)
    session = build_session(
        channel,
        agent_set=load_agent_set(agent_set_name),
        config=config,
        session_id=dispatch_ctx.session_id,
    )

    reporter: Optional[SessionReporter] = None
    if config.control_plane_url:
        reporter = SessionReporter(
            session,
            config.control_plane_url,
            livekit_room=ctx.room.name,
            interval_seconds=config.control_plane_report_interval_seconds,
        )
    else:
        session_logger.warning("CONTROL_PLANE_URL not set; session will not be visible to the Control Plane")

    async def _on_shutdown(*_args):
        await session.disconnect("job_shutdown")

    ctx.add_shutdown_callback(_on_shutdown)

    try:
        await session.connect()
        await session.send_user_text(GREETING_TRIGGER)
    except TransportError as e:
        session_logger.error("Orchestrator session failed to start", error=str(e), error_type=type(e).__name__)
        if reporter is not None:
            await reporter.report()
        return

    reporting = asyncio.create_task(reporter.run()) if reporter is not None else None
    await session.run()
    if reporting is not None:
        reporting.cancel()
        await asyncio.gather(reporting, return_exceptions=True)
        await reporter.report()
    session_logger.info(
        "Orchestrator job finished",
        reason=session.disconnect_reason,
        transcript_items=len(session.transcript),
    )


if __name__ == "__main__":
    config = get_config()
    setup_logging(level=config.log_level, use_json=config.log_json)
    cli.run_app(WorkerOptions(entrypoint_fnc=entrypoint))
