"""Entry point for the Hub service.
Prepares the canonical root and serves the /sync WebSocket endpoint.
"""

import argparse
import asyncio
import sys
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from common.constants import SYNC_ENDPOINT_PATH
from common.exceptions import SetupError
from common.fs_ops import prepare_root
from common.logging_config import setup_logging
from hub.config import HUB_HOST, HUB_PORT, HUB_ROOT, SUPPRESSION_WINDOW_SECONDS
from hub.hub_agent import HubAgent
from hub.session import Session

logger = setup_logging('hub')


def create_app(agent: HubAgent) -> FastAPI:
    """
    Build the FastAPI application around a hub agent.

    The agent is started and stopped with the application lifespan.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Hub service starting up...")
        await agent.start()
        yield
        logger.info("Hub service shutting down...")
        await agent.stop()

    app = FastAPI(
        title="Sync Hub",
        description="Canonical replica for hub/edge filesystem replication",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.agent = agent

    @app.websocket(SYNC_ENDPOINT_PATH)
    async def sync_endpoint(websocket: WebSocket):
        await websocket.accept()

        session_id = str(uuid.uuid4())
        session = Session(session_id, websocket.send_text)
        writer = asyncio.create_task(session.run_writer())
        client = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else "unknown"
        logger.info(f"Edge connected [session_id={session_id}] [client={client}]")

        await agent.submit_connect(session)
        try:
            while True:
                frame = await websocket.receive_text()
                await agent.submit_frame(session, frame)
        except WebSocketDisconnect:
            logger.info(f"Edge disconnected [session_id={session_id}]")
        except Exception as e:
            logger.error(f"Connection error [session_id={session_id}]: {e}", exc_info=True)
        finally:
            await agent.submit_disconnect(session)
            session.close()
            try:
                await writer
            except Exception as e:
                logger.debug(f"Writer for {session_id} ended with error: {e}")

    @app.get("/")
    async def root():
        return {
            "service": "Sync Hub",
            "status": "running",
            "version": "1.0.0"
        }

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "root": str(agent.root),
            "sessions": len(agent.sessions)
        }

    return app


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the sync hub server")
    parser.add_argument("--host", default=HUB_HOST, help=f"Bind address (default: {HUB_HOST})")
    parser.add_argument("--port", type=int, default=HUB_PORT, help=f"Listen port (default: {HUB_PORT})")
    parser.add_argument("--dir", default=HUB_ROOT, help=f"Canonical root directory (default: {HUB_ROOT})")
    parser.add_argument("--log-level", default=None, help="Log level (DEBUG, INFO, WARNING, ERROR)")
    return parser.parse_args(argv)


def main(argv=None) -> None:
    """Bootstrap hub service."""
    args = parse_args(argv)

    setup_logging('hub', args.log_level)
    setup_logging('common', args.log_level)

    try:
        root: Path = prepare_root(args.dir)
    except SetupError as e:
        logger.error(f"Unable to prepare root directory: {e.message}")
        sys.exit(1)

    agent = HubAgent(root, suppression_window=SUPPRESSION_WINDOW_SECONDS)
    app = create_app(agent)

    logger.info(f"Starting hub on {args.host}:{args.port} [root={root}]")
    try:
        uvicorn.run(
            app,
            host=args.host,
            port=args.port,
            log_level=(args.log_level or "info").lower()
        )
    except SystemExit as e:
        # uvicorn exits with its own code when lifespan startup fails (watch setup)
        if e.code not in (0, None):
            logger.error(f"Hub failed to start [code={e.code}]")
            sys.exit(1)
        raise


if __name__ == "__main__":
    main()
