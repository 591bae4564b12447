from __future__ import annotations

from typing import Any

import msgspec


class User(msgspec.Struct, forbid_unknown_fields=False):
    id: int
    is_bot: bool = False
    first_name: str | None = None
    username: str | None = None


class Chat(msgspec.Struct, forbid_unknown_fields=False):
    id: int
    type: str | None = None
    title: str | None = None
    username: str | None = None


class PhotoSize(msgspec.Struct, forbid_unknown_fields=False):
    file_id: str
    width: int = 0
    height: int = 0


class Media(msgspec.Struct, forbid_unknown_fields=False):
    file_id: str
    mime_type: str | None = None
    file_name: str | None = None


class Message(msgspec.Struct, forbid_unknown_fields=False):
    message_id: int
    chat: Chat | None = None
    text: str | None = None
    caption: str | None = None
    photo: list[PhotoSize] | None = None
    video: Media | None = None
    animation: Media | None = None
    document: Media | None = None
    audio: Media | None = None
    voice: Media | None = None

    @property
    def is_media(self) -> bool:
        return bool(self.photo) or self.video is not None or self.animation is not None


class IncomingMessage(msgspec.Struct, forbid_unknown_fields=False):
    message_id: int
    chat: Chat
    text: str | None = None
    from_: User | None = msgspec.field(default=None, name="from")


class Update(msgspec.Struct, forbid_unknown_fields=False):
    update_id: int
    message: IncomingMessage | None = None
    edited_message: IncomingMessage | None = None


def decode_update(payload: Any) -> Update | None:
    try:
        return msgspec.convert(payload, type=Update)
    except msgspec.ValidationError:
        return None
