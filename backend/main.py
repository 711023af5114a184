import asyncio
import logging
import os
import random
from contextlib import asynccontextmanager, suppress
from datetime import timedelta
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from config import Settings, settings as default_settings
from routers.ws_router import ConnectionManager
from services.join_code import JoinCodeRenderer, no_join_code
from services.orchestrator import SessionOrchestrator
from services.playback import FixedDelayPlayback, PlaybackPolicy, PlaybackSignal
from services.session_registry import SessionRegistry
from services.story_graph import StoryGraph, load_story_graph
from services.voting import VotingCoordinator

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def build_playback_policy(cfg: Settings) -> PlaybackPolicy:
    if cfg.playback_policy == "signal":
        return PlaybackSignal(timeout_seconds=cfg.playback_signal_timeout_seconds)
    return FixedDelayPlayback(seconds=cfg.playback_settle_seconds)


def create_app(
    cfg: Settings = default_settings,
    *,
    graph: Optional[StoryGraph] = None,
    rng: Optional[random.Random] = None,
    playback: Optional[PlaybackPolicy] = None,
    join_code_renderer: JoinCodeRenderer = no_join_code,
) -> FastAPI:
    """Build the app. ``graph``/``rng``/``playback`` override the configured ones (tests)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Branching video vote backend starting up...")
        # A story config that cannot be loaded aborts startup (StoryLoadError propagates)
        story = graph if graph is not None else load_story_graph(
            cfg.story_config_path, video_base_url=cfg.video_base_url
        )

        connections = ConnectionManager()
        registry = SessionRegistry(
            story.start_node_id,
            client_url=cfg.client_url,
            ttl=timedelta(seconds=cfg.session_ttl_seconds),
        )
        orchestrator = SessionOrchestrator(
            story,
            registry,
            VotingCoordinator(registry, rng=rng),
            connections,
            playback=playback or build_playback_policy(cfg),
            results_reveal_seconds=cfg.results_reveal_seconds,
            join_code_renderer=join_code_renderer,
        )
        app.state.connections = connections
        app.state.orchestrator = orchestrator

        reaper = asyncio.create_task(
            registry.run_reaper(cfg.reap_interval_seconds, on_reaped=orchestrator.forget_sessions)
        )
        logger.info("All services initialized (%d story nodes)", len(story))
        yield
        reaper.cancel()
        with suppress(asyncio.CancelledError):
            await reaper
        await orchestrator.shutdown()
        logger.info("Backend shutting down.")

    app = FastAPI(
        title="Branching Video Vote",
        version=VERSION,
        description="Real-time group voting over a branching video story",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "service": "branching-video-vote", "version": VERSION}

    from routers.session_router import router as session_router
    from routers.ws_router import router as ws_router

    app.include_router(session_router, prefix="/api")
    app.include_router(ws_router)

    # Serve branch videos when the directory is present (local/dev deployments)
    video_dir = os.path.abspath(cfg.video_dir)
    if os.path.isdir(video_dir):
        app.mount(cfg.video_base_url, StaticFiles(directory=video_dir), name="videos")
        logger.info(f"Serving videos from {video_dir}")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=default_settings.debug)
