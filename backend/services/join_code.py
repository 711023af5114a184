"""
Join codes — the scannable image shown on the host screen.

Rendering the image is delegated to whatever renderer the app is built with; the
orchestrator only passes it the join URL and forwards the returned string
(typically a data URL) untouched.
"""
import logging
from typing import Callable

logger = logging.getLogger(__name__)

JoinCodeRenderer = Callable[[str], str]


def no_join_code(join_url: str) -> str:
    """Default renderer: clients draw the code themselves from ``joinUrl``."""
    return ""


def render_join_code(renderer: JoinCodeRenderer, join_url: str) -> str:
    """Call the renderer, degrading to an empty image on failure."""
    try:
        return renderer(join_url) or ""
    except Exception:
        logger.warning("Join code rendering failed for %s", join_url, exc_info=True)
        return ""
