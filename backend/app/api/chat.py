import asyncio
import json

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse
from loguru import logger
from pydantic import ValidationError as PayloadError

from app.core import chat as chat_service
from app.core.errors import ChatError, ValidationError
from app.core.streaming import StreamSession
from app.models.chat import (
    ChatSendPayload,
    Conversation,
    ConversationOut,
    CreateConversationRequest,
    SendMessageRequest,
)

router = APIRouter(prefix="/api/chat", tags=["chat"])

INTERNAL_ERROR = {
    "type": "error",
    "error": "internal",
    "message": "Streaming error occurred",
    "provider": None,
    "retryable": True,
}


def _sse(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


async def _require_conversation(conversation_id: str) -> Conversation:
    conversation = await chat_service.get_conversation(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


# ── Conversations ───────────────────────────────────────────────────────────────

@router.post("/conversations", response_model=ConversationOut)
async def create_conversation(body: CreateConversationRequest) -> ConversationOut:
    conversation = await chat_service.create_conversation(
        provider=body.provider,
        model=body.model,
        system_prompt=body.system_prompt,
        max_tokens=body.max_tokens,
        temperature=body.temperature,
    )
    return ConversationOut.from_conversation(conversation)


@router.get("/conversations", response_model=list[ConversationOut])
async def list_conversations() -> list[ConversationOut]:
    conversations = await chat_service.list_conversations()
    return [ConversationOut.from_conversation(c) for c in conversations]


@router.get("/conversations/{conversation_id}", response_model=Conversation)
async def get_conversation(conversation_id: str) -> Conversation:
    return await _require_conversation(conversation_id)


@router.delete("/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str):
    if not await chat_service.delete_conversation(conversation_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"deleted": conversation_id}


# ── Messages ────────────────────────────────────────────────────────────────────

@router.post("/conversations/{conversation_id}/messages")
async def stream_message(conversation_id: str, body: SendMessageRequest):
    conversation = await _require_conversation(conversation_id)

    # Reject empty sends before the stream opens; the status code can't change mid-stream
    user_message = chat_service.build_user_message(body.content, body.attachments)
    chat_service.validate_user_message(user_message)

    async def stream_response():
        queue: asyncio.Queue[dict | None] = asyncio.Queue()

        async def on_chunk(text: str, done: bool) -> None:
            if not done:
                await queue.put({"type": "chunk", "content": text})

        async def on_status(status: str | None) -> None:
            await queue.put({"type": "status", "content": status})

        async def run_turn() -> None:
            try:
                updated = await chat_service.send_and_stream(
                    conversation,
                    user_message,
                    on_chunk,
                    on_status,
                    search_results=body.search_results,
                )
                await queue.put({
                    "type": "done",
                    "content": updated.messages[-1].content,
                    "conversation": ConversationOut.from_conversation(updated).model_dump(),
                })
            except ChatError as e:
                await queue.put({"type": "error", **e.to_dict()})
            except Exception as e:
                logger.exception("[chat] streaming error for {}: {}", conversation_id, e)
                await queue.put(INTERNAL_ERROR)
            finally:
                await queue.put(None)

        task = asyncio.create_task(run_turn())
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield _sse(event)
        finally:
            if not task.done():
                task.cancel()

    return StreamingResponse(
        stream_response(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "Connection": "keep-alive",
        },
    )


@router.post("/conversations/{conversation_id}/send")
async def send_message(conversation_id: str, body: SendMessageRequest):
    conversation = await _require_conversation(conversation_id)
    user_message = chat_service.build_user_message(body.content, body.attachments)
    updated = await chat_service.send_message(
        conversation,
        user_message,
        search_results=body.search_results,
    )
    return {
        "reply": updated.messages[-1].content,
        "conversation": ConversationOut.from_conversation(updated),
    }


# ── WebSocket ───────────────────────────────────────────────────────────────────

class ChatConnection:
    """
    One WebSocket client.

    Each chatSend gets its own StreamSession. Starting a new send makes it the
    active session; events from older sessions are dropped so the client only
    ever sees the stream it asked for last.
    """

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.session: StreamSession | None = None
        self._tasks: set[asyncio.Task] = set()

    def is_active(self, session: StreamSession) -> bool:
        return self.session is session

    async def emit(self, session: StreamSession, event: dict) -> None:
        if not self.is_active(session):
            return
        await self.websocket.send_json({"conversation_id": session.conversation_id, **event})

    async def dispatch(self, data: dict) -> None:
        message_type = data.get("type") if isinstance(data, dict) else None
        if message_type != "chatSend":
            await self.websocket.send_json({
                "type": "error",
                **ValidationError(f"Unknown message type: {message_type}").to_dict(),
            })
            return

        try:
            payload = ChatSendPayload(**(data.get("payload") or {}))
        except PayloadError as e:
            await self.websocket.send_json({
                "type": "error",
                **ValidationError(f"Invalid chatSend payload: {e.errors()[0]['msg']}").to_dict(),
            })
            return

        session = StreamSession(conversation_id=payload.conversation_id)
        self.session = session
        task = asyncio.create_task(self.handle_send(session, payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def handle_send(self, session: StreamSession, payload: ChatSendPayload) -> None:
        async def on_chunk(text: str, done: bool) -> None:
            if not done:
                await self.emit(session, {"type": "chunk", "content": text})

        async def on_status(status: str | None) -> None:
            await self.emit(session, {"type": "status", "content": status})

        try:
            conversation = await chat_service.get_conversation(payload.conversation_id)
            if conversation is None:
                raise ValidationError("Conversation not found")

            user_message = chat_service.build_user_message(payload.content, payload.attachments)
            updated = await chat_service.send_and_stream(
                conversation,
                user_message,
                on_chunk,
                on_status,
                search_results=payload.search_results,
                session=session,
            )
            await self.emit(session, {
                "type": "done",
                "content": updated.messages[-1].content,
                "conversation": ConversationOut.from_conversation(updated).model_dump(),
            })
        except ChatError as e:
            await self.emit(session, {"type": "error", **e.to_dict()})
        except WebSocketDisconnect:
            logger.debug("[chat] client went away during {}", session.conversation_id)
        except Exception as e:
            logger.exception("[chat] websocket turn failed for {}: {}", session.conversation_id, e)
            await self.emit(session, INTERNAL_ERROR)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


@router.websocket("/ws")
async def chat_socket(websocket: WebSocket):
    await websocket.accept()
    connection = ChatConnection(websocket)
    logger.info("[chat] websocket connected")
    try:
        while True:
            await connection.dispatch(await websocket.receive_json())
    except WebSocketDisconnect:
        logger.info("[chat] websocket disconnected")
    finally:
        await connection.close()
