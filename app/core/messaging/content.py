"""
Message content extraction and contact phone resolution.

Turns a ``RemoteMessage`` into the (type, content, mime) triple stored in
``whatsapp_messages`` and maps chat ids to the phone number used as the
conversation key.
"""

import re
from dataclasses import dataclass
from typing import Optional

from .client import RemoteMessage

STATUS_BROADCAST = "status@broadcast"
PREVIEW_LENGTH = 100

# Message types that carry no user content
NOTIFICATION_TYPES = {
    "e2e_notification",
    "notification",
    "notification_template",
    "call_log",
    "gp2",
    "protocol",
    "revoked",
}

INTERACTIVE_TYPES = {"interactive", "button_reply", "list_reply", "buttons_response", "list_response"}

MEDIA_TYPES = {
    "image": ("image", "image/jpeg"),
    "ptt": ("audio", "audio/ogg"),
    "audio": ("audio", "audio/ogg"),
    "video": ("video", "video/mp4"),
    "document": ("document", None),
    "sticker": ("sticker", "image/webp"),
}


@dataclass
class ExtractedContent:
    """Storable view of a message body."""

    message_type: str
    content: str
    media_mime_type: Optional[str] = None

    @property
    def preview(self) -> str:
        """Conversation preview text."""
        return self.content[:PREVIEW_LENGTH] if self.content else f"[{self.message_type}]"


def extract_message_content(msg: RemoteMessage) -> Optional[ExtractedContent]:
    """
    Extract storable content from a message.

    Returns None for notifications and for unknown types without a body;
    those messages are not persisted.
    """
    body = msg.body or ""

    if msg.type in NOTIFICATION_TYPES:
        return None

    if msg.has_media and msg.type in MEDIA_TYPES:
        message_type, mime = MEDIA_TYPES[msg.type]
        if message_type in ("image", "video"):
            content = msg.caption or ""
        elif message_type == "audio":
            content = "[Audio]"
        elif message_type == "document":
            content = msg.filename or "[Document]"
        else:
            content = "[Sticker]"
        return ExtractedContent(message_type, content, mime)

    if msg.type == "location":
        loc = msg.location
        if loc:
            content = f"{loc.get('latitude')},{loc.get('longitude')}"
            if loc.get("description"):
                content += f" - {loc['description']}"
        else:
            content = "[Location]"
        return ExtractedContent("location", content)

    if msg.type in ("vcard", "multi_vcard"):
        return ExtractedContent("contact", body or "[Contact]")

    if msg.type in INTERACTIVE_TYPES:
        return ExtractedContent("interactive", body or "[Interactive message]")

    if msg.type == "chat":
        return ExtractedContent("text", body)

    if not body:
        return None
    return ExtractedContent("text", body)


def is_status_broadcast(msg: RemoteMessage) -> bool:
    """Status updates are never stored."""
    return STATUS_BROADCAST in (msg.sender, msg.recipient, msg.chat_id)


def is_group_chat(chat_id: str) -> bool:
    return chat_id.endswith("@g.us")


def to_chat_id(target: str) -> str:
    """
    Normalize a send target to a chat id.

    Targets that already contain a server suffix are kept as-is; anything
    else is treated as a phone number.
    """
    target = target.strip()
    if "@" in target:
        return target
    digits = re.sub(r"[^0-9]", "", target)
    if not digits:
        raise ValueError(f"Invalid send target: {target!r}")
    return f"{digits}@c.us"


class ContactPhoneResolver:
    """
    Resolves chat ids to conversation phone keys.

    Privacy ids (``@lid``) do not embed the phone number; when the client
    cannot provide a plausible number the key becomes ``lid_<id>``.
    Results are cached for the lifetime of the resolver.
    """

    MIN_DIGITS = 8
    MAX_DIGITS = 15

    def __init__(self):
        self._cache: dict[str, str] = {}

    def resolve(
        self,
        chat_id: str,
        own_number: Optional[str] = None,
        raw_number: Optional[str] = None,
    ) -> Optional[str]:
        """
        Return the phone key for ``chat_id``.

        Returns None for empty ids and for the tenant's own number.
        """
        if not chat_id:
            return None

        phone = self._cache.get(chat_id)
        if phone is None:
            if chat_id.endswith("@lid"):
                lid = chat_id[: -len("@lid")]
                digits = re.sub(r"[^0-9]", "", raw_number or "")
                if self.MIN_DIGITS <= len(digits) <= self.MAX_DIGITS and digits != lid:
                    phone = digits
                else:
                    phone = f"lid_{lid}"
            else:
                phone = chat_id.split("@", 1)[0]

            if not phone:
                return None
            self._cache[chat_id] = phone

        if own_number and phone == own_number:
            return None
        return phone

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)
