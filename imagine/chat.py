"""
Chat boundary: replies, buttons and the sessions that publish them.

The queue never talks to a chat platform directly. It builds Reply objects
and hands them to a ChatSession, addressed by the originating Interaction.
BroadcastChatSession publishes every reply as a JSON event to the connected
WebSocket clients; a platform bridge subscribes there and renders them.
"""
from __future__ import annotations

import base64
import json
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from imagine.logging_utils import redact
from shared.schemas import Event, Interaction

log = logging.getLogger("imagine.chat")

ERROR_COLOR = 15548997  # 0xED4245
REDACTED = "[...]"

# Button custom ids
INTERRUPT = "imagine_interrupt"
CANCEL = "imagine_cancel"
CANCEL_DISABLED = "imagine_cancel_disabled"
DELETE_ERROR = "delete_error_message"
DELETE_GENERATION = "delete_generation"
REROLL = "imagine_reroll"
VARIATION = "imagine_variation"
UPSCALE = "imagine_upscale"


class Button(BaseModel):
    custom_id: str
    label: str
    style: str = "secondary"
    disabled: bool = False


BUTTONS: Dict[str, Button] = {
    INTERRUPT: Button(custom_id=INTERRUPT, label="Interrupt", style="danger"),
    CANCEL: Button(custom_id=CANCEL, label="Cancel", style="danger"),
    CANCEL_DISABLED: Button(custom_id=CANCEL, label="Cancel", style="danger", disabled=True),
    DELETE_ERROR: Button(custom_id=DELETE_ERROR, label="Delete this message", style="danger"),
    DELETE_GENERATION: Button(custom_id=DELETE_GENERATION, label="Delete", style="danger"),
    REROLL: Button(custom_id=REROLL, label="Re-roll", style="primary"),
}


def variation_button(index: int) -> Button:
    return Button(custom_id=f"{VARIATION}_{index}", label=f"V{index}")


def upscale_button(index: int) -> Button:
    return Button(custom_id=f"{UPSCALE}_{index}", label=f"U{index}")


def generation_buttons(images: int, disable_variations: bool = False) -> List[Button]:
    """Reroll, one V/U pair per image, and delete."""
    buttons = [BUTTONS[REROLL]]
    for index in range(1, images + 1):
        variation = variation_button(index)
        variation.disabled = disable_variations
        buttons.append(variation)
        buttons.append(upscale_button(index))
    buttons.append(BUTTONS[DELETE_GENERATION])
    return buttons


class EmbedField(BaseModel):
    name: str
    value: str
    inline: bool = False


class Embed(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    color: Optional[int] = None
    fields: List[EmbedField] = Field(default_factory=list)
    image: Optional[str] = None  # attachment filename
    thumbnails: List[str] = Field(default_factory=list)


class ReplyFile(BaseModel):
    filename: str
    content: bytes
    content_type: str = "image/png"


class Reply(BaseModel):
    content: Optional[str] = None
    embeds: List[Embed] = Field(default_factory=list)
    files: List[ReplyFile] = Field(default_factory=list)
    components: List[Button] = Field(default_factory=list)
    ephemeral: bool = False

    def wire(self) -> Dict[str, Any]:
        """JSON-safe form, file contents base64-encoded."""
        data = self.model_dump(exclude={"files"})
        data["files"] = [
            {
                "filename": f.filename,
                "content_type": f.content_type,
                "content": base64.b64encode(f.content).decode("ascii"),
            }
            for f in self.files
        ]
        return data


# ---------------------------------------------------------------------------
# Error replies
# ---------------------------------------------------------------------------
ErrorContent = Union[str, BaseException, List[Any], None]


def sanitize_token(text: str, token: Optional[str] = None) -> str:
    if token:
        text = text.replace(token, REDACTED)
    return text


def format_error(*errors: ErrorContent) -> str:
    messages: List[str] = []
    for content in errors:
        if content is None:
            continue
        if isinstance(content, str):
            messages.append(content)
        elif isinstance(content, BaseException):
            messages.append(str(content) or type(content).__name__)
        elif isinstance(content, (list, tuple)):
            nested = format_error(*content)
            if nested:
                messages.append(nested)
        else:
            messages.append(f"An unknown error has occurred\nReceived: {content!r}")

    if not messages:
        messages = ["An unknown error has occurred"]
    text = "\n".join(messages)
    if len(messages) > 1:
        text = "Multiple errors have occurred:\n" + text
    return text


def error_reply(
    *errors: ErrorContent,
    interaction: Optional[Interaction] = None,
    token: Optional[str] = None,
    ephemeral: bool = False,
) -> Reply:
    """Error embed with a delete button; the chat token never leaks into it."""
    message = sanitize_token(format_error(*errors), token)
    content = None
    if interaction is not None and interaction.command:
        content = f"Could not run `{interaction.command}`"
    return Reply(
        content=content,
        embeds=[Embed(color=ERROR_COLOR, fields=[EmbedField(name="Error", value=message)])],
        components=[] if ephemeral else [BUTTONS[DELETE_ERROR]],
        ephemeral=ephemeral,
    )


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------
class ChatSession(ABC):
    @abstractmethod
    async def edit_reply(self, interaction: Interaction, reply: Reply) -> str:
        """Replace the interaction's reply; returns the reply's message id."""

    @abstractmethod
    async def followup(self, interaction: Interaction, reply: Reply) -> str:
        """Post an additional message under the interaction."""

    async def error(self, interaction: Interaction, *errors: ErrorContent, token: Optional[str] = None) -> str:
        reply = error_reply(*errors, interaction=interaction, token=token)
        log.error("Error replying to %s: %s", interaction.id, redact(reply.embeds[0].fields[0].value))
        return await self.edit_reply(interaction, reply)

    async def error_followup(self, interaction: Interaction, *errors: ErrorContent, token: Optional[str] = None) -> str:
        reply = error_reply(*errors, interaction=interaction, token=token, ephemeral=True)
        log.error("Error follow-up to %s: %s", interaction.id, redact(reply.embeds[0].fields[0].value))
        return await self.followup(interaction, reply)


class BroadcastChatSession(ChatSession):
    """Publishes replies as Event JSON to every connected WebSocket client."""

    def __init__(self):
        self.clients: Dict[str, Any] = {}
        self.message_ids: Dict[str, str] = {}
        self.last_reply: Dict[str, Reply] = {}

    def connect(self, client_id: str, ws) -> None:
        self.clients[client_id] = ws
        log.info("WS client connected: %s (total=%d)", client_id, len(self.clients))

    def disconnect(self, client_id: str) -> None:
        self.clients.pop(client_id, None)

    async def broadcast(self, event: Event) -> None:
        """Send to all clients, dropping the ones that fail."""
        txt = json.dumps(event.model_dump(), default=str)
        to_remove: List[str] = []
        for cid, ws in list(self.clients.items()):
            try:
                await ws.send_text(txt)
            except Exception as exc:
                log.warning("WebSocket send failed for %s: %s", cid, exc)
                to_remove.append(cid)
        for cid in to_remove:
            self.clients.pop(cid, None)

    def _message_id(self, interaction: Interaction) -> str:
        if interaction.id not in self.message_ids:
            self.message_ids[interaction.id] = uuid.uuid4().hex
        return self.message_ids[interaction.id]

    async def edit_reply(self, interaction: Interaction, reply: Reply) -> str:
        message_id = self._message_id(interaction)
        self.last_reply[interaction.id] = reply
        payload = {"message_id": message_id, "reply": reply.wire()}
        await self.broadcast(Event(interaction_id=interaction.id, type="reply_edit", payload=payload))
        return message_id

    async def followup(self, interaction: Interaction, reply: Reply) -> str:
        message_id = uuid.uuid4().hex
        payload = {"message_id": message_id, "reply": reply.wire()}
        await self.broadcast(Event(interaction_id=interaction.id, type="reply_followup", payload=payload))
        return message_id

    async def close(self) -> None:
        for cid, ws in list(self.clients.items()):
            try:
                await ws.close()
            except Exception as exc:
                log.debug("WebSocket close failed for %s: %s", cid, exc)
        self.clients.clear()
