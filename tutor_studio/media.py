from __future__ import annotations

import base64
import binascii
import uuid
from dataclasses import dataclass, field

from tutor_studio.errors import MalformedInput


DEFAULT_IMAGE_MIME = "image/png"


def encode_data_uri(data: bytes | str, mime_type: str | None = None) -> str:
    """
    Inline image parts come back from google-genai as raw bytes; older payloads may already be base64 text.
    """
    if isinstance(data, bytes):
        payload = base64.b64encode(data).decode("ascii")
    else:
        payload = data
    return f"data:{mime_type or DEFAULT_IMAGE_MIME};base64,{payload}"


def decode_data_uri(uri: str) -> tuple[str, bytes]:
    if not isinstance(uri, str) or not uri.startswith("data:"):
        raise MalformedInput("Image is not a data URI")
    header, sep, payload = uri.partition(",")
    if not sep or not payload:
        raise MalformedInput("Data URI is missing its ',' delimited payload")

    meta = header[len("data:") :]
    if not meta.endswith(";base64"):
        raise MalformedInput("Data URI payload is not base64 encoded", {"header": header})
    mime_type = meta[: -len(";base64")] or DEFAULT_IMAGE_MIME

    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedInput("Data URI payload is not valid base64") from e
    return mime_type, data


@dataclass
class VideoClip:
    """
    A downloaded concept video, held in memory and served back to the client by id.
    """

    data: bytes
    mime_type: str = "video/mp4"
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def size(self) -> int:
        return len(self.data)
