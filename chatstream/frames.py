"""
Push channel frames and the line decoder.

The server pushes one JSON object per event. Two framings are accepted:
bare JSON lines, and Server-Sent Events where the JSON sits in ``data:``
fields and events are separated by blank lines.
"""
import json
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from chatstream.exceptions import FrameDecodeError


class _Frame(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class HeartbeatFrame(_Frame):
    type: Literal["heartbeat"] = "heartbeat"


class ConnectedFrame(_Frame):
    """First event of an SSE stream; carries the conversation id only."""

    type: Literal["connected"] = "connected"
    conversation_id: Optional[int] = Field(default=None, alias="conversationId")


class ReasoningFrame(_Frame):
    type: Literal["reasoning"] = "reasoning"
    content: str = ""


class ContentFrame(_Frame):
    # "token" and "message" are two names for the same answer delta.
    type: Literal["token", "message"] = "token"
    content: str = ""


class FinishFrame(_Frame):
    type: Literal["finish"] = "finish"
    content: Optional[str] = None
    chunk_count: Optional[int] = Field(default=None, alias="chunkCount")


class ErrorFrame(_Frame):
    type: Literal["error"] = "error"
    message: Optional[str] = None
    details: Optional[str] = None


Frame = Annotated[
    Union[HeartbeatFrame, ConnectedFrame, ReasoningFrame, ContentFrame, FinishFrame, ErrorFrame],
    Field(discriminator="type"),
]

_frame_adapter: TypeAdapter[Frame] = TypeAdapter(Frame)

# SSE fields that carry no frame payload.
_IGNORED_SSE_FIELDS = ("event:", "id:", "retry:")


def decode_frame(line: str) -> Optional[Frame]:
    """Decode one line from the push channel.

    Returns None for lines that carry no frame (blank separators, SSE
    comments and bookkeeping fields). Raises FrameDecodeError when the line
    should have held a frame but could not be decoded.
    """
    text = line.strip()
    if not text or text.startswith(":"):
        return None
    if text.startswith(_IGNORED_SSE_FIELDS):
        return None
    if text.startswith("data:"):
        text = text[len("data:"):].strip()
        if not text:
            return None

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise FrameDecodeError(f"Invalid JSON: {e.msg}", line) from e

    if not isinstance(payload, dict):
        raise FrameDecodeError("Frame is not a JSON object", line)

    if "type" not in payload and "conversationId" in payload:
        payload = {**payload, "type": "connected"}

    try:
        return _frame_adapter.validate_python(payload)
    except ValidationError as e:
        raise FrameDecodeError(
            f"Unrecognised frame type={payload.get('type')!r}: {e.error_count()} error(s)",
            line,
        ) from e
