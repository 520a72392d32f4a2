"""
Programmatic uvicorn runner.

Usage:
    collabdocs
    python -m app.server
"""
import asyncio
import sys
from typing import List, Optional

import uvicorn

from app.core.config import Settings, settings
from app.core.lifecycle import ProcessGuard
from app.core.logging import configure_logging


def build_server_config(config: Optional[Settings] = None) -> uvicorn.Config:
    config = config or settings
    return uvicorn.Config(
        "app.main:asgi_app",
        host=config.HOST,
        port=config.PORT,
        log_level=config.LOG_LEVEL.lower(),
        proxy_headers=True,
    )


def banner(config: Optional[Settings] = None) -> List[str]:
    config = config or settings
    return [
        "",
        "=" * 50,
        f" Server running in {config.NODE_ENV} mode",
        f" Port: {config.PORT}",
        f" URL: http://localhost:{config.PORT}",
        " Socket.IO initialized",
        "=" * 50,
        "",
    ]


def run(config: Optional[Settings] = None) -> int:
    """Serve until shutdown. Returns the process exit status."""
    config = config or settings
    configure_logging(config)
    server = uvicorn.Server(build_server_config(config))
    guard = ProcessGuard(server)
    guard.install_excepthook()

    async def serve():
        guard.install_loop_handler()
        for line in banner(config):
            print(line, flush=True)
        await server.serve()

    asyncio.run(serve())
    return guard.exit_code


def main():
    sys.exit(run())


if __name__ == "__main__":
    main()
