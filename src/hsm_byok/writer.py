from __future__ import annotations

import base64
import logging
from pathlib import Path

from .exceptions import IoError, describe_exception

_logger = logging.getLogger("hsm_byok.writer")


def encode_and_persist(path: str | Path, blob: bytes) -> Path:
    """Write blob as single-line standard base64, replacing any existing file."""
    target = Path(path)
    encoded = base64.b64encode(blob).decode("ascii")
    try:
        if target.parent != Path("."):
            target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(encoded, encoding="ascii")
    except OSError as exc:
        _logger.exception("Failed to write wrapped key file path=%s", target)
        raise IoError(
            f"Failed to write wrapped key file '{target}': {describe_exception(exc)}"
        ) from exc
    _logger.info("Saved wrapped key file %s (wrapped_size=%d)", target, len(blob))
    return target
