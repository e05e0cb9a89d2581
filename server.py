"""
KartTiming — Server entry point.

Starts the FastAPI server with the REST API and the dashboard WebSocket.
Usage:
    python server.py [--port 5000] [--host 0.0.0.0] [--db PATH] [--no-seed] [--debug]
    python server.py --dev        # hot reload, default settings
    # or: uvicorn server:app --host 0.0.0.0 --port 5000 --reload
"""

import argparse
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from core.database import DB_PATH, get_connection, init_db, seed_defaults
from api.routes import router as api_router
from api.websocket import router as ws_router

logger = logging.getLogger("karttiming")

HOST = "0.0.0.0"
PORT = 5000


def create_app(db_path: Optional[str] = None, seed: bool = True) -> FastAPI:
    """Build the application around one shared store connection."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup: open + init the store, seed defaults. Shutdown: close it."""
        conn = get_connection(db_path)
        init_db(conn)
        if seed:
            seed_defaults(conn)
        app.state.conn = conn
        logger.info("Store ready (%s)", db_path or DB_PATH)

        yield

        conn.close()

    app = FastAPI(title="KartTiming", lifespan=lifespan)
    app.include_router(api_router, prefix="/api")
    app.include_router(ws_router)

    @app.get("/")
    async def root():
        return {"name": "KartTiming", "api": "/api", "ws": "/ws", "docs": "/docs"}

    return app


app = create_app()


# ─── Main ────────────────────────────────────────────────────────────

def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="KartTiming live timing server")
    parser.add_argument("--host", default=HOST)
    parser.add_argument("--port", type=int, default=PORT)
    parser.add_argument("--db", default=None,
                        help="SQLite file (default: in-memory, lost on restart)")
    parser.add_argument("--no-seed", action="store_true",
                        help="start without the default session and karts")
    parser.add_argument("--dev", action="store_true", help="hot reload")
    parser.add_argument("--debug", action="store_true")
    return parser.parse_args(argv)


if __name__ == "__main__":
    import uvicorn

    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )

    if args.dev:
        uvicorn.run("server:app", host=args.host, port=args.port, reload=True)
    else:
        print(f"KartTiming server — http://localhost:{args.port}/api/status")
        uvicorn.run(
            create_app(args.db, seed=not args.no_seed),
            host=args.host, port=args.port,
            log_level="debug" if args.debug else "warning",
        )
