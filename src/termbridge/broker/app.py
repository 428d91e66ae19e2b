from __future__ import annotations

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from .. import __version__
from ..contracts.v1 import (
    CLIENT_MESSAGE,
    CreateTerminal,
    ErrorCode,
    TerminalError,
    TerminalInput,
    TerminalOutput,
    TerminalResize,
)
from .health import health_snapshot
from .manager import SessionChannel, SessionManager

logger = logging.getLogger(__name__)

# Close code sent to a client that could not keep up with its output.
WS_CLOSE_TRY_AGAIN_LATER = 1013


async def _dispatch(manager: SessionManager, channel: SessionChannel, conn_id: str, text: str) -> None:
    try:
        msg = CLIENT_MESSAGE.validate_python(json.loads(text))
    except (ValueError, ValidationError) as e:
        logger.info("bad message: %s", e, extra={"conn_id": conn_id})
        channel.emit(TerminalError(error=f"invalid message: {e}", code=ErrorCode.BAD_MESSAGE))
        return

    if isinstance(msg, CreateTerminal):
        await manager.create_session(conn_id, msg)
    elif isinstance(msg, TerminalInput):
        await manager.write(conn_id, msg.data.encode("utf-8"))
    elif isinstance(msg, TerminalResize):
        await manager.resize(conn_id, msg.cols, msg.rows)


def create_app(manager: Optional[SessionManager] = None) -> FastAPI:
    mgr = manager or SessionManager()

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        await asyncio.to_thread(mgr.stop_all)

    app = FastAPI(title="termbridge broker", version=__version__, lifespan=lifespan)
    app.state.manager = mgr
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["Origin", "X-Requested-With", "Content-Type", "Accept"],
    )

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return health_snapshot(mgr).model_dump()

    @app.websocket("/terminal")
    async def terminal(websocket: WebSocket) -> None:
        await websocket.accept()
        conn_id = uuid.uuid4().hex
        channel = mgr.open_channel(conn_id)
        logger.info("client connected", extra={"conn_id": conn_id})

        async def _pump_out() -> None:
            while True:
                event = await channel.get()
                if event is None:
                    return
                if isinstance(event, TerminalOutput):
                    await websocket.send_bytes(event.data)
                else:
                    await websocket.send_json(event.to_wire())

        async def _pump_in() -> None:
            while True:
                message = await websocket.receive()
                if message.get("type") == "websocket.disconnect":
                    return
                data = message.get("bytes")
                if data is not None:
                    await mgr.write(conn_id, data)
                    continue
                text = message.get("text")
                if text:
                    await _dispatch(mgr, channel, conn_id, text)

        out_task = asyncio.create_task(_pump_out())
        in_task = asyncio.create_task(_pump_in())
        try:
            done, pending = await asyncio.wait({out_task, in_task}, return_when=asyncio.FIRST_COMPLETED)
            for t in done:
                if not t.cancelled() and t.exception() is not None:
                    logger.info("connection pump ended: %r", t.exception(), extra={"conn_id": conn_id})
            for t in pending:
                t.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            if out_task in done and channel.closed:
                try:
                    await websocket.close(code=WS_CLOSE_TRY_AGAIN_LATER)
                except RuntimeError:
                    pass
        finally:
            await mgr.close_channel(conn_id)
            logger.info("client disconnected", extra={"conn_id": conn_id})

    return app
