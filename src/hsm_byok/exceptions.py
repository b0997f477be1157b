from __future__ import annotations


class ByokError(RuntimeError):
    """Base export error."""

    stage: str | None = None


class ByokConfigurationError(ByokError):
    """Configuration is invalid or incomplete."""


class BoundaryError(ByokError):
    """A module, session, key generation, object or destroy call failed."""


class WrapError(ByokError):
    """The HSM rejected a wrap operation."""


class ParseError(ByokError):
    """The recipient public key could not be parsed."""


class IoError(ByokError):
    """Writing a wrapped key file failed."""


def describe_exception(exc: BaseException) -> str:
    details = str(exc).strip()
    if not details and getattr(exc, "args", None):
        details = ", ".join(str(a) for a in exc.args if a)
    if details:
        return f"{type(exc).__name__}: {details}"
    return type(exc).__name__
