"""
Development backend: a FastAPI stand-in for the chat service.

Implements the REST endpoints the client calls and the SSE push channel at
``/api/v1/ai/stream/{conversation_id}``. Replies come from a pluggable
responder; the default one echoes the prompt back word by word.
"""
import asyncio
import json
import logging
import re
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from chatstream import conversation_store as store
from chatstream.config import settings
from chatstream.database import init_database
from chatstream.models import (
    ConversationCreate,
    ConversationUpdate,
    LoginRequest,
    MessageCreate,
    User,
)

logger = logging.getLogger(__name__)

# A responder yields ("reasoning" | "content", delta) pairs for one prompt.
Responder = Callable[[str, bool], AsyncIterator[tuple[str, str]]]

_WORDS = re.compile(r"\s*\S+\s*")


def split_words(text: str) -> list[str]:
    return _WORDS.findall(text)


async def echo_responder(prompt: str, thinking: bool) -> AsyncIterator[tuple[str, str]]:
    """Deterministic reply used when no model is attached."""
    if thinking:
        for word in split_words(f"The user wrote {len(prompt)} characters. Echo them back."):
            yield "reasoning", word
    for word in split_words(f"You said: {prompt}" if prompt else "Hello! Ask me anything."):
        yield "content", word


def _data(payload) -> dict:
    return {"data": payload}


def _dump(model) -> dict:
    return model.model_dump(by_alias=True, mode="json")


def sse(payload: dict) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


async def current_user(request: Request) -> User:
    """Bearer header first, then the ``token`` query parameter (EventSource cannot set headers)."""
    token = None
    auth_header = request.headers.get("Authorization", "")
    scheme, _, value = auth_header.partition(" ")
    if scheme == "Bearer" and value:
        token = value
    if not token:
        token = request.query_params.get("token")
    if not token:
        raise HTTPException(status_code=401, detail="Missing credentials")

    user = await store.user_for_token(token)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user


api = APIRouter(prefix="/api/v1")


@api.post("/auth/login")
async def login(body: LoginRequest):
    """Log in (any password is accepted; unknown emails get an account)."""
    token, user = await store.login_user(body.email)
    return _data({"accessToken": token, "user": _dump(user)})


@api.get("/users/profile")
async def profile(user: User = Depends(current_user)):
    return _data(_dump(user))


@api.get("/conversations")
async def list_conversations(q: str = "", user: User = Depends(current_user)):
    conversations = await store.list_conversations(user.id, q)
    return _data({"items": [_dump(c) for c in conversations]})


@api.post("/conversations", status_code=201)
async def create_conversation(body: ConversationCreate, user: User = Depends(current_user)):
    conversation = await store.create_conversation(user.id, body.name)
    return _data(_dump(conversation))


async def _owned_conversation(user: User, conversation_id: int):
    conversation = await store.get_conversation(user.id, conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


@api.put("/conversations/{conversation_id}")
async def rename_conversation(
    conversation_id: int, body: ConversationUpdate, user: User = Depends(current_user)
):
    conversation = await _owned_conversation(user, conversation_id)
    if body.name is not None:
        conversation = await store.rename_conversation(user.id, conversation_id, body.name)
    return _data(_dump(conversation))


@api.delete("/conversations/{conversation_id}")
async def delete_conversation(conversation_id: int, user: User = Depends(current_user)):
    if not await store.delete_conversation(user.id, conversation_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    return _data({"deleted": True})


@api.get("/messages/conversation/{conversation_id}")
async def conversation_messages(conversation_id: int, user: User = Depends(current_user)):
    await _owned_conversation(user, conversation_id)
    messages = await store.list_messages(conversation_id)
    return _data({"items": [_dump(m) for m in messages]})


@api.post("/messages", status_code=201)
async def create_message(body: MessageCreate, user: User = Depends(current_user)):
    await _owned_conversation(user, body.conversation_id)
    message = await store.save_message(body.conversation_id, body.type, body.content)
    return _data(_dump(message))


async def _save_reply(conversation_id: int, content: str, reasoning: str):
    """Persist the assistant reply; an empty reply is not saved."""
    if not content:
        return
    try:
        await store.save_message(conversation_id, "assistant", content, reasoning or None)
    except Exception:
        logger.exception("Failed to save assistant reply for conversation %s", conversation_id)


@api.get("/ai/stream/{conversation_id}")
async def stream_reply(
    request: Request,
    conversation_id: int,
    prompt: str = "",
    thinking: str = "disabled",
    user: User = Depends(current_user),
):
    """Stream a reply for the conversation as Server-Sent Events."""
    await _owned_conversation(user, conversation_id)
    responder: Responder = request.app.state.responder
    delay = request.app.state.token_delay

    async def events() -> AsyncIterator[str]:
        content = ""
        reasoning = ""
        chunk_count = 0
        yield sse({"conversationId": conversation_id})
        try:
            async for kind, delta in responder(prompt, thinking == "enabled"):
                if delay:
                    await asyncio.sleep(delay)
                chunk_count += 1
                if kind == "reasoning":
                    reasoning += delta
                    frame_type = "reasoning"
                else:
                    content += delta
                    frame_type = "token"
                yield sse({
                    "type": frame_type,
                    "content": delta,
                    "done": False,
                    "conversationId": conversation_id,
                })
        except Exception as e:
            logger.exception("Responder failed for conversation %s", conversation_id)
            yield sse({"type": "error", "message": "AI service call failed", "details": str(e)})
        else:
            yield sse({
                "type": "finish",
                "conversationId": conversation_id,
                "content": content,
                "chunkCount": chunk_count,
            })
        finally:
            # Also runs when the client disconnects mid-stream.
            await _save_reply(conversation_id, content, reasoning)

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


def create_app(responder: Optional[Responder] = None, token_delay: Optional[float] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize database on startup."""
        await init_database()
        yield

    app = FastAPI(title="chatstream development backend", version="1.0.0", lifespan=lifespan)
    app.state.responder = responder or echo_responder
    app.state.token_delay = settings.dev_token_delay if token_delay is None else token_delay
    app.include_router(api)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": "chatstream-devserver"}

    return app


app = create_app()
