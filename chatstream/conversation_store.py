"""
CRUD operations on users, conversations and messages for the development backend.
"""
import secrets
from typing import Optional, List

from chatstream.database import get_db
from chatstream.models import Conversation, Message, MessageType, User


async def login_user(email: str) -> tuple[str, User]:
    """Find or create the user for ``email`` and issue a new access token."""
    async with get_db() as db:
        cursor = await db.execute("SELECT * FROM users WHERE email = ?", (email,))
        row = await cursor.fetchone()
        if row is None:
            cursor = await db.execute(
                "INSERT INTO users (email, username) VALUES (?, ?)",
                (email, email.split("@")[0] or email)
            )
            cursor = await db.execute("SELECT * FROM users WHERE id = ?", (cursor.lastrowid,))
            row = await cursor.fetchone()

        token = secrets.token_urlsafe(24)
        await db.execute(
            "INSERT INTO tokens (token, user_id) VALUES (?, ?)",
            (token, row["id"])
        )
        await db.commit()

        return token, User(**dict(row))


async def user_for_token(token: str) -> Optional[User]:
    async with get_db() as db:
        cursor = await db.execute(
            "SELECT users.* FROM tokens JOIN users ON users.id = tokens.user_id WHERE tokens.token = ?",
            (token,)
        )
        row = await cursor.fetchone()
        return User(**dict(row)) if row else None


def _conversation(row) -> Conversation:
    data = dict(row)
    data["message_count"] = data.pop("message_count", 0) or 0
    data.pop("user_id", None)
    return Conversation(**data)


_CONVERSATION_SELECT = """
    SELECT conversations.*,
           (SELECT COUNT(*) FROM messages WHERE messages.conversation_id = conversations.id)
               AS message_count
    FROM conversations
"""


async def create_conversation(user_id: int, name: str) -> Conversation:
    async with get_db() as db:
        cursor = await db.execute(
            "INSERT INTO conversations (user_id, name) VALUES (?, ?)",
            (user_id, name)
        )
        await db.commit()
        cursor = await db.execute(
            _CONVERSATION_SELECT + " WHERE conversations.id = ?",
            (cursor.lastrowid,)
        )
        return _conversation(await cursor.fetchone())


async def list_conversations(user_id: int, query: str = "") -> List[Conversation]:
    """Conversations of a user, most recently updated first."""
    async with get_db() as db:
        cursor = await db.execute(
            _CONVERSATION_SELECT
            + " WHERE user_id = ? AND name LIKE ? ORDER BY updated_at DESC, id DESC",
            (user_id, f"%{query}%")
        )
        return [_conversation(row) for row in await cursor.fetchall()]


async def get_conversation(user_id: int, conversation_id: int) -> Optional[Conversation]:
    async with get_db() as db:
        cursor = await db.execute(
            _CONVERSATION_SELECT + " WHERE conversations.id = ? AND user_id = ?",
            (conversation_id, user_id)
        )
        row = await cursor.fetchone()
        return _conversation(row) if row else None


async def rename_conversation(user_id: int, conversation_id: int, name: str) -> Optional[Conversation]:
    async with get_db() as db:
        await db.execute(
            "UPDATE conversations SET name = ?, updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') WHERE id = ? AND user_id = ?",
            (name, conversation_id, user_id)
        )
        await db.commit()
    return await get_conversation(user_id, conversation_id)


async def delete_conversation(user_id: int, conversation_id: int) -> bool:
    async with get_db() as db:
        cursor = await db.execute(
            "DELETE FROM conversations WHERE id = ? AND user_id = ?",
            (conversation_id, user_id)
        )
        await db.commit()
        return cursor.rowcount > 0


async def save_message(
    conversation_id: int,
    type: MessageType,
    content: str,
    reasoning_content: Optional[str] = None,
) -> Message:
    """Append a message; ``sort`` continues the conversation's sequence."""
    async with get_db() as db:
        cursor = await db.execute(
            "SELECT COALESCE(MAX(sort), 0) + 1 FROM messages WHERE conversation_id = ?",
            (conversation_id,)
        )
        (sort,) = await cursor.fetchone()
        cursor = await db.execute(
            "INSERT INTO messages (conversation_id, type, content, reasoning_content, sort) "
            "VALUES (?, ?, ?, ?, ?)",
            (conversation_id, type, content, reasoning_content, sort)
        )
        await db.execute(
            "UPDATE conversations SET updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') WHERE id = ?",
            (conversation_id,)
        )
        await db.commit()
        cursor = await db.execute("SELECT * FROM messages WHERE id = ?", (cursor.lastrowid,))
        return _message(await cursor.fetchone())


def _message(row) -> Message:
    data = dict(row)
    data.pop("sort", None)
    return Message(**data)


async def list_messages(conversation_id: int) -> List[Message]:
    async with get_db() as db:
        cursor = await db.execute(
            "SELECT * FROM messages WHERE conversation_id = ? ORDER BY sort ASC",
            (conversation_id,)
        )
        return [_message(row) for row in await cursor.fetchall()]
