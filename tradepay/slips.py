import logging
import secrets
import time
from pathlib import Path

from tradepay.errors import ValidationError

logger = logging.getLogger(__name__)

MAX_SLIP_BYTES = 6 * 1024 * 1024

EXTENSION_BY_TYPE = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
}

# leading bytes of each accepted type; webp is RIFF....WEBP
_MAGIC = {
    "image/png": lambda head: head.startswith(b"\x89PNG\r\n\x1a\n"),
    "image/jpeg": lambda head: head.startswith(b"\xff\xd8\xff"),
    "image/webp": lambda head: head[:4] == b"RIFF" and head[8:12] == b"WEBP",
}


class SlipCollector:
    """Stores proof-of-payment images for manual payment methods.

    The stored name is generated here (time plus a random suffix); the
    client-supplied filename is never used to build a path.
    """

    def __init__(self, upload_dir, url_prefix="/uploads/slips", max_bytes=MAX_SLIP_BYTES):
        self.directory = Path(upload_dir) / "slips"
        self.url_prefix = url_prefix.rstrip("/")
        self.max_bytes = max_bytes

    def validate(self, content, content_type):
        content_type = (content_type or "").split(";")[0].strip().lower()
        if content_type not in EXTENSION_BY_TYPE:
            raise ValidationError(
                "Invalid file type",
                content_type=content_type,
                allowed=sorted(EXTENSION_BY_TYPE),
            )
        if not content:
            raise ValidationError("Slip file is empty")
        if len(content) > self.max_bytes:
            raise ValidationError("Slip file is too large", max_bytes=self.max_bytes)
        if not _MAGIC[content_type](content[:12]):
            raise ValidationError("File content does not match its declared type", content_type=content_type)
        return content_type

    def store(self, content, content_type):
        """Validate and write the slip; return its public reference."""
        content_type = self.validate(content, content_type)

        name = f"slip_{int(time.time() * 1000)}_{secrets.token_hex(8)}{EXTENSION_BY_TYPE[content_type]}"
        self.directory.mkdir(parents=True, exist_ok=True)
        # "x" refuses to overwrite an existing file
        with open(self.directory / name, "xb") as fh:
            fh.write(content)

        logger.info("stored slip %s (%d bytes)", name, len(content))
        return f"{self.url_prefix}/{name}"

    def discard(self, reference):
        name = reference.rsplit("/", 1)[-1]
        path = self.directory / name
        if path.parent == self.directory and path.exists():
            path.unlink()
            logger.info("discarded slip %s", name)
