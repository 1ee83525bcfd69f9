"""
FastAPI Backend with WebSocket Sync Channel for the Shared Task Board

Hosts the realtime channel every client connects to, plus a health check and
a small info route. The board components (store, session registry, service,
dispatcher, socket router) are built in the lifespan and hung off
``app.state.board``; nothing is kept in module-level mutable state.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from . import __version__
from .broadcast import BroadcastDispatcher
from .config import BoardSettings
from .database import BoardDatabase, utc_now_str
from .handlers import BoardSocketHandler
from .service import BoardService
from .sessions import SessionRegistry

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@dataclass
class BoardServer:
    """Wired server-side components for one running app."""
    settings: BoardSettings
    database: BoardDatabase
    sessions: SessionRegistry
    service: BoardService
    dispatcher: BroadcastDispatcher
    socket_handler: BoardSocketHandler

    @classmethod
    def build(cls, settings: BoardSettings) -> "BoardServer":
        database = BoardDatabase(settings.database_path)
        sessions = SessionRegistry(database)
        service = BoardService(database, enrollment_policy=settings.enrollment_policy)
        dispatcher = BroadcastDispatcher()
        return cls(
            settings=settings,
            database=database,
            sessions=sessions,
            service=service,
            dispatcher=dispatcher,
            socket_handler=BoardSocketHandler(service, sessions, dispatcher),
        )

    def close(self) -> None:
        self.database.close()


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""
    status: str
    databaseConnected: bool
    activeConnections: int
    authenticatedSessions: int
    timestamp: str


def get_board(request: Request) -> BoardServer:
    """
    FastAPI dependency providing the running board components.

    Raises:
        HTTPException: 503 before startup or after shutdown
    """
    board: Optional[BoardServer] = getattr(request.app.state, "board", None)
    if board is None:
        raise HTTPException(status_code=503, detail="Board not available")
    return board


def create_app(settings: Optional[BoardSettings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Server settings; read from the environment when omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        resolved = settings or BoardSettings.from_env()
        try:
            app.state.board = BoardServer.build(resolved)
            logger.info(f"Database initialized: {resolved.database_path}")
            logger.info(f"Enrollment policy: {resolved.enrollment_policy}")
        except Exception as e:
            logger.error(f"Failed to initialize board: {e}")
            raise

        yield

        board = app.state.board
        app.state.board = None
        board.close()
        logger.info("Database connection closed")

    app = FastAPI(
        title="Shared Task Board",
        description="Realtime shared task board with WebSocket synchronization",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.board = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def info():
        """Service description for humans poking at the port."""
        return {
            "message": "Shared Task Board API",
            "version": __version__,
            "websocket": "/ws",
        }

    @app.get("/healthz", response_model=HealthResponse)
    async def health_check(board: BoardServer = Depends(get_board)):
        """Report database connectivity and live connection counts."""
        database_connected = True
        try:
            board.database.ping()
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            database_connected = False

        return HealthResponse(
            status="healthy" if database_connected else "degraded",
            databaseConnected=database_connected,
            activeConnections=board.dispatcher.connection_count(),
            authenticatedSessions=board.sessions.count(),
            timestamp=utc_now_str(),
        )

    @app.websocket("/ws")
    async def websocket_sync(websocket: WebSocket):
        """Accept a client, then route every frame until it disconnects."""
        board: Optional[BoardServer] = websocket.app.state.board
        if board is None:
            await websocket.close(code=1013)
            return

        await websocket.accept()
        connection_id = await board.socket_handler.connect(websocket)
        try:
            while True:
                message = await websocket.receive_text()
                await board.socket_handler.handle_message(connection_id, message)
        except WebSocketDisconnect:
            logger.info(f"Connection {connection_id} closed by client")
        except Exception as e:
            logger.error(f"WebSocket error on {connection_id}: {e}")
        finally:
            await board.socket_handler.disconnect(connection_id)

    return app


app = create_app()
