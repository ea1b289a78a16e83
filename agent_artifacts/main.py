"""
Uvicorn launcher for the Agent Artifacts API.

``python -m agent_artifacts.main`` and ``agent-artifacts serve`` both end up in ``run``.
"""

from typing import Optional

import uvicorn

from .api import app  # noqa: F401
from .config import get_settings


def run(host: Optional[str] = None, port: Optional[int] = None, reload: bool = False) -> None:
    settings = get_settings()
    uvicorn.run(
        "agent_artifacts.main:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=reload,
        # uvicorn ignores workers when reloading
        workers=1 if reload else settings.api_workers,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run(reload=get_settings().debug)
