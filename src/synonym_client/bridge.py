# synonym_client/bridge.py
"""
Local bridge between the reconciliation engine and the browser page.

The browser keeps the wallet and renders; this process keeps the game
state. State is pushed over a websocket on every change, intents come back
the same way, and write messages are signed by the browser wallet through
`sign_request` / `signed` round trips.
"""
import asyncio
import base64
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Literal, Optional, Set

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from starlette.websockets import WebSocketState

from .config import Settings, settings
from .errors import GuardViolation, SynonymClientError
from .logger import logger
from .models import PlayerIdentity
from .process_client import Tags, make_process_client
from .session import GameSession

# ===================================================================
# WebSocket Protocol Models
# ===================================================================

class WSIncomingMessage(BaseModel):
    """A message received from the browser."""
    kind: Literal[
        "connect",
        "disconnect",
        "create",
        "join",
        "leave",
        "ready",
        "submit",
        "acknowledge",
        "signed",
    ]
    payload: Dict[str, Any] = {}

class WSOutgoingMessage(BaseModel):
    """A message sent to the browser."""
    kind: Literal["state_update", "error", "system", "sign_request"]
    payload: Dict[str, Any]


class ConnectionManager:
    """Manages the browser websockets attached to this bridge."""

    def __init__(self):
        self.connections: Set[WebSocket] = set()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.connections.add(websocket)
        logger.info(f"Browser connected. Total: {len(self.connections)}")

    def disconnect(self, websocket: WebSocket):
        self.connections.discard(websocket)
        logger.info(f"Browser disconnected. Remaining: {len(self.connections)}")

    async def broadcast(self, message: WSOutgoingMessage):
        payload = message.model_dump_json()
        tasks = [
            connection.send_text(payload)
            for connection in list(self.connections)
            if connection.client_state == WebSocketState.CONNECTED
        ]
        await asyncio.gather(*tasks, return_exceptions=True)


class BrowserSigner:
    """Signs write messages by asking the browser wallet, over the websocket."""

    def __init__(self, connections: ConnectionManager, timeout: float = 60.0):
        self.connections = connections
        self.timeout = timeout
        self.owner = ""
        self._pending: Dict[str, asyncio.Future] = {}

    async def sign(self, target: str, tags: Tags, data: str) -> bytes:
        request_id = str(uuid.uuid4())
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        await self.connections.broadcast(WSOutgoingMessage(
            kind="sign_request",
            payload={"request_id": request_id, "target": target, "tags": tags, "data": data},
        ))
        try:
            return await asyncio.wait_for(future, timeout=self.timeout)
        finally:
            self._pending.pop(request_id, None)

    def resolve(self, request_id: str, data_item: str) -> bool:
        future = self._pending.get(request_id)
        if future is None or future.done():
            logger.warning(f"Signature for unknown or expired request {request_id}")
            return False
        future.set_result(base64.b64decode(data_item))
        return True


def state_payload(session: GameSession) -> Dict[str, Any]:
    return {
        **session.state().model_dump(mode="json"),
        "status": session.status,
        "lobbies": [lobby.model_dump(mode="json", by_alias=True) for lobby in session.reconciler.lobbies],
    }


async def handle_intent(session: GameSession, signer: Optional[BrowserSigner], msg: WSIncomingMessage) -> None:
    """Runs one browser intent against the session. Errors propagate to the caller."""
    payload = msg.payload
    if msg.kind == "connect":
        player_id = payload.get("player_id")
        if not player_id:
            raise GuardViolation("player_id is required")
        if signer is not None:
            signer.owner = player_id
        await session.connect(PlayerIdentity(player_id=player_id, is_connected=True))
    elif msg.kind == "disconnect":
        session.disconnect()
    elif msg.kind == "create":
        await session.create_lobby(payload.get("name", ""))
    elif msg.kind == "join":
        lobby_id = payload.get("lobby_id")
        if lobby_id is None:
            raise GuardViolation("lobby_id is required")
        await session.join_lobby(lobby_id)
    elif msg.kind == "leave":
        await session.leave_lobby()
    elif msg.kind == "ready":
        await session.ready_up()
    elif msg.kind == "submit":
        await session.submit_word(payload.get("word", ""))
    elif msg.kind == "acknowledge":
        await session.acknowledge_complete(play_again=bool(payload.get("play_again", True)))
    elif msg.kind == "signed":
        if signer is not None:
            signer.resolve(payload.get("request_id", ""), payload.get("data_item", ""))


def create_app(session: Optional[GameSession] = None, config: Optional[Settings] = None) -> FastAPI:
    config = config or settings
    connection_manager = ConnectionManager()
    signer: Optional[BrowserSigner] = None
    if session is None:
        signer = BrowserSigner(connection_manager, timeout=config.process.signing_timeout)
        session = GameSession(make_process_client(config, signer=signer), config=config)
    background: Set[asyncio.Task] = set()

    def _spawn(coro):
        task = asyncio.get_running_loop().create_task(coro)
        background.add(task)
        task.add_done_callback(background.discard)

    def _push_state(_view):
        try:
            _spawn(connection_manager.broadcast(
                WSOutgoingMessage(kind="state_update", payload=state_payload(session))
            ))
        except RuntimeError:
            # No running loop, e.g. during shutdown.
            pass

    session.on_update(_push_state)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        for task in list(background):
            task.cancel()
        await session.aclose()

    app = FastAPI(title="Synonym Game Client Bridge", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.session = session
    app.state.connections = connection_manager

    async def _run_intent(websocket: WebSocket, msg: WSIncomingMessage):
        try:
            await handle_intent(session, signer, msg)
        except SynonymClientError as e:
            await websocket.send_text(WSOutgoingMessage(
                kind="error", payload={"intent": msg.kind, "message": getattr(e, "message", str(e))}
            ).model_dump_json())
        except Exception:
            logger.error(f"Error handling '{msg.kind}' intent", exc_info=True)

    @app.get("/api/state")
    async def get_state():
        return JSONResponse(content=state_payload(session))

    @app.get("/api/lobbies")
    async def get_lobbies(search: str = ""):
        lobbies: List[Dict[str, Any]] = [
            lobby.model_dump(mode="json", by_alias=True) for lobby in session.reconciler.filter_lobbies(search)
        ]
        return JSONResponse(content=lobbies)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await connection_manager.connect(websocket)
        await websocket.send_text(
            WSOutgoingMessage(kind="state_update", payload=state_payload(session)).model_dump_json()
        )
        try:
            while True:
                data = await websocket.receive_text()
                try:
                    msg = WSIncomingMessage.model_validate_json(data)
                except ValidationError:
                    await websocket.send_text(WSOutgoingMessage(
                        kind="error", payload={"message": "Unrecognised message"}
                    ).model_dump_json())
                    continue
                # Writes may wait on a signature that arrives over this same socket.
                _spawn(_run_intent(websocket, msg))
        except WebSocketDisconnect:
            connection_manager.disconnect(websocket)

    return app


def main():
    import uvicorn

    uvicorn.run(create_app(), host=settings.bridge.host, port=settings.bridge.port)
