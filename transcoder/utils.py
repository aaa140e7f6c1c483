import mimetypes
import os
from uuid import uuid4

from django.conf import settings


def upload_key(filename: str) -> str:
    """Namespaced key for a raw upload: uploads/<uuid>_<basename>."""
    safe_name = f"{uuid4().hex}_{os.path.basename(filename)}"
    return f"{settings.UPLOADS_PREFIX}/{safe_name}"


def is_video(path: str) -> bool:
    """True when the mimetype guessed from the extension is video/*."""
    mime, _ = mimetypes.guess_type(path)
    return bool(mime) and mime.startswith("video/")


def format_sse(event: str, data) -> str:
    return f"event: {event}\ndata: {data}\n\n"
