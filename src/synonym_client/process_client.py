# synonym_client/process_client.py
from __future__ import annotations

import abc
import asyncio
import json
import uuid
from typing import Any, Dict, List, Mapping, Optional, Protocol, Union

import httpx
from pydantic import ValidationError

from .config import Settings, settings as default_settings
from .errors import FailureKind, ProcessFailure
from .logger import logger
from .models import InfoResponse, LobbyListResponse, LobbyStateResponse

Tags = List[Dict[str, str]]
Params = Optional[Union[str, Mapping[str, str]]]

# ===================================================================
# Transport Abstraction
# ===================================================================

class MessageSigner(Protocol):
    """Wallet boundary: turns a message into a signed data item ready for the messenger unit."""

    @property
    def owner(self) -> str: ...

    async def sign(self, target: str, tags: Tags, data: str) -> bytes: ...


class ProcessTransport(abc.ABC):
    """Moves one request to the game process and returns its raw result."""

    @abc.abstractmethod
    async def dryrun(self, tags: Tags, data: str) -> Any:
        """Evaluates a read-only message against the process state."""

    async def sign(self, tags: Tags, data: str) -> Optional[bytes]:
        """Signs a write before it is sent. Transports that need no wallet return None."""
        return None

    @abc.abstractmethod
    async def message(self, tags: Tags, data: str, signed: Optional[bytes] = None) -> Any:
        """Appends a signed message to the process and returns its evaluation result."""

    async def aclose(self) -> None:
        return None


class HttpProcessTransport(ProcessTransport):
    """
    Talks to an AO compute unit (reads, results) and messenger unit (writes) over HTTP.

    Reads never need a signature. Writes are signed by the injected wallet
    signer, posted to the messenger unit, and their result is then read back
    from the compute unit.
    """

    def __init__(
        self,
        process_id: str,
        cu_url: str,
        mu_url: str,
        signer: Optional[MessageSigner] = None,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.process_id = process_id
        self.cu_url = cu_url.rstrip("/")
        self.mu_url = mu_url.rstrip("/")
        self.signer = signer
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def dryrun(self, tags: Tags, data: str) -> Any:
        owner = self.signer.owner if self.signer else "1234"
        payload = {
            "Id": str(uuid.uuid4()),
            "Target": self.process_id,
            "Owner": owner,
            "Data": data,
            "Tags": tags,
        }
        response = await self._client.post(
            f"{self.cu_url}/dry-run", params={"process-id": self.process_id}, json=payload
        )
        response.raise_for_status()
        return response.json()

    async def sign(self, tags: Tags, data: str) -> bytes:
        if self.signer is None:
            raise ProcessFailure(FailureKind.NETWORK, "No wallet signer is available for write actions")
        return await self.signer.sign(self.process_id, tags, data)

    async def message(self, tags: Tags, data: str, signed: Optional[bytes] = None) -> Any:
        if signed is None:
            raise ProcessFailure(FailureKind.NETWORK, "Write actions must be signed before sending")
        response = await self._client.post(
            self.mu_url, content=signed, headers={"Content-Type": "application/octet-stream"}
        )
        response.raise_for_status()
        message_id = response.json().get("id")
        if not message_id:
            raise ProcessFailure(FailureKind.MALFORMED_RESPONSE, "Messenger unit returned no message id")
        result = await self._client.get(
            f"{self.cu_url}/result/{message_id}", params={"process-id": self.process_id}
        )
        result.raise_for_status()
        body = result.json()
        # A result without output still confirms the message was accepted.
        if isinstance(body, dict) and not body.get("Messages"):
            return message_id
        return body

    async def aclose(self) -> None:
        await self._client.aclose()


# ===================================================================
# Result Parsing
# ===================================================================

def parse_result(result: Union[str, Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Extracts the JSON reply from a process result.

    A bare string is a message id with no reply payload and counts as an
    acknowledgement. Anything else must carry JSON in `Messages[0].Data`.
    """
    if isinstance(result, str):
        logger.debug(f"Message accepted, id {result}")
        return {"status": "success", "txId": result}

    try:
        data = result["Messages"][0]["Data"]
    except (KeyError, IndexError, TypeError):
        raise ProcessFailure(FailureKind.MALFORMED_RESPONSE, "No Data in process response")

    try:
        parsed = json.loads(data)
    except (TypeError, json.JSONDecodeError):
        raise ProcessFailure(FailureKind.MALFORMED_RESPONSE, "Process response Data is not JSON")

    if not isinstance(parsed, dict):
        raise ProcessFailure(FailureKind.MALFORMED_RESPONSE, "Process response Data is not an object")
    return parsed


def _ensure_status(response: Dict[str, Any], action: str, accepted=("success",)) -> Dict[str, Any]:
    status = response.get("status")
    if status is None:
        raise ProcessFailure(FailureKind.MALFORMED_RESPONSE, f"{action} response has no status")
    if status not in accepted:
        reason = response.get("error") or response.get("message") or f"status '{status}'"
        raise ProcessFailure(FailureKind.PROCESS_ERROR, f"{action} failed: {reason}")
    return response


# ===================================================================
# Process Client
# ===================================================================

class ProcessClient:
    """
    Sends named actions to the game process.

    `query` is for reads: side-effect free and safe to repeat. `send` is for
    writes and is invoked at most once per user intent; it never retries.
    Both raise `ProcessFailure` instead of returning partial data.
    """

    def __init__(self, transport: ProcessTransport, request_timeout: float = 15.0):
        self.transport = transport
        self.request_timeout = request_timeout

    @staticmethod
    def _build(action: str, params: Params):
        tags = [{"name": "Action", "value": action}]
        # Single-value actions carry the raw value, structured ones a JSON object.
        if params is None:
            data = ""
        elif isinstance(params, str):
            data = params
        else:
            data = json.dumps(dict(params))
        return tags, data

    async def _sign(self, action: str, tags: Tags, data: str) -> Optional[bytes]:
        # Not covered by the request timeout; the signer bounds the wallet approval itself.
        try:
            return await self.transport.sign(tags, data)
        except asyncio.TimeoutError:
            raise ProcessFailure(FailureKind.NETWORK, f"{action} was not signed in time")

    async def _call(self, kind: str, action: str, params: Params) -> Dict[str, Any]:
        tags, data = self._build(action, params)
        if kind == "read":
            call = self.transport.dryrun(tags, data)
        else:
            call = self.transport.message(tags, data, await self._sign(action, tags, data))
        try:
            raw = await asyncio.wait_for(call, timeout=self.request_timeout)
        except ProcessFailure:
            raise
        except asyncio.TimeoutError:
            raise ProcessFailure(FailureKind.NETWORK, f"{action} timed out after {self.request_timeout}s")
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error from process for {action}: {e.response.status_code} - {e.response.text}")
            raise ProcessFailure(FailureKind.NETWORK, f"{action} failed with HTTP {e.response.status_code}")
        except httpx.HTTPError as e:
            raise ProcessFailure(FailureKind.NETWORK, f"{action} transport error: {e}")
        except ValueError as e:
            # httpx surfaces undecodable JSON bodies as ValueError.
            raise ProcessFailure(FailureKind.MALFORMED_RESPONSE, f"{action} returned invalid JSON: {e}")
        return parse_result(raw)

    async def query(self, action: str, params: Params = None) -> Dict[str, Any]:
        return await self._call("read", action, params)

    async def send(self, action: str, params: Params = None) -> Dict[str, Any]:
        logger.info(f"Sending {action} to game process")
        return await self._call("write", action, params)

    # --- Typed helpers, one per process action ---

    async def info(self) -> InfoResponse:
        response = await self.query("Info")
        _ensure_status(response, "Info", accepted=("Connected", "success"))
        return _validate(InfoResponse, response, "Info")

    async def create_lobby(self, name: str = "") -> Optional[str]:
        """Returns the new lobby id, or None when the process only acknowledged the message."""
        response = _ensure_status(await self.send("CreateLobby", name or None), "CreateLobby")
        lobby_id = response.get("lobbyId")
        return str(lobby_id) if lobby_id is not None else None

    async def join_lobby(self, lobby_id: str) -> Dict[str, Any]:
        return _ensure_status(await self.send("JoinLobby", str(lobby_id)), "JoinLobby")

    async def leave_lobby(self, lobby_id: str) -> Dict[str, Any]:
        return _ensure_status(await self.send("LeaveLobby", str(lobby_id)), "LeaveLobby")

    async def player_ready(self, lobby_id: str, player_id: str) -> Dict[str, Any]:
        return _ensure_status(
            await self.send("PlayerReady", {"lobbyId": lobby_id, "playerId": player_id}), "PlayerReady"
        )

    async def submit_word(self, lobby_id: str, player_id: str, word: str) -> Dict[str, Any]:
        return _ensure_status(
            await self.send("SubmitWord", {"lobbyId": lobby_id, "playerId": player_id, "word": word}),
            "SubmitWord",
        )

    async def list_lobbies(self) -> LobbyListResponse:
        response = _ensure_status(await self.query("ListLobbies"), "ListLobbies")
        return _validate(LobbyListResponse, response, "ListLobbies")

    async def get_lobby_state(self, lobby_id: str) -> LobbyStateResponse:
        response = _ensure_status(await self.query("LobbyState", str(lobby_id)), "LobbyState")
        return _validate(LobbyStateResponse, response, "LobbyState")

    async def aclose(self) -> None:
        await self.transport.aclose()


def _validate(model, response: Dict[str, Any], action: str):
    try:
        return model.model_validate(response)
    except ValidationError as e:
        raise ProcessFailure(FailureKind.MALFORMED_RESPONSE, f"{action} response has the wrong shape: {e.error_count()} error(s)")


def make_process_client(
    config: Optional[Settings] = None, signer: Optional[MessageSigner] = None
) -> ProcessClient:
    config = config or default_settings
    logger.info(f"Using game process {config.process.process_id}.")
    transport = HttpProcessTransport(
        process_id=config.process.process_id,
        cu_url=config.process.cu_url,
        mu_url=config.process.mu_url,
        signer=signer,
        timeout=config.process.request_timeout,
    )
    return ProcessClient(transport, request_timeout=config.process.request_timeout)
