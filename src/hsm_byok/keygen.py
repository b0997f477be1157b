from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import pkcs11
from pkcs11 import Attribute, KeyType, ObjectClass

from .exceptions import BoundaryError, describe_exception

INTERMEDIATE_KEY_BITS = 256
USER_KEY_BITS = 2048
USER_KEY_PUBLIC_EXPONENT = b"\x03"

_logger = logging.getLogger("hsm_byok.keygen")


@dataclass(frozen=True)
class UserKeyPair:
    """Token-resident RSA key pair whose private half is exported."""

    label: str
    key_id: bytes
    public_key: pkcs11.PublicKey
    private_key: pkcs11.PrivateKey


def make_key_label(prefix: str = "MC_", now: float | None = None) -> tuple[str, bytes]:
    """Return `<prefix><epoch millis>` and its UTF-8 bytes for use as CKA_ID."""
    timestamp = time.time() if now is None else now
    label = f"{prefix}{int(timestamp * 1000)}"
    return label, label.encode("utf-8")


def create_intermediate_key(
    session: pkcs11.Session,
    *,
    sensitive: bool = True,
) -> pkcs11.SecretKey:
    """
    Generate the single-use AES-256 intermediate key as a session object.

    The key must be extractable so it can itself be wrapped for the recipient.
    sensitive=False makes CKA_VALUE readable and is only needed for the
    host-side OAEP fallback.
    """
    try:
        key = session.generate_key(
            KeyType.AES,
            INTERMEDIATE_KEY_BITS,
            store=False,
            template={
                Attribute.TOKEN: False,
                Attribute.EXTRACTABLE: True,
                Attribute.SENSITIVE: sensitive,
                Attribute.WRAP: True,
                Attribute.ENCRYPT: True,
            },
        )
        _logger.info(
            "Generated intermediate AES key bits=%d sensitive=%s",
            INTERMEDIATE_KEY_BITS,
            sensitive,
        )
        return key
    except Exception as exc:
        _logger.exception("Failed to generate intermediate AES key.")
        raise BoundaryError(
            f"Failed to generate intermediate AES key: {describe_exception(exc)}"
        ) from exc


def _find_existing_private_key(
    session: pkcs11.Session, label: str, key_id: bytes
) -> str | None:
    for attribute, value in ((Attribute.LABEL, label), (Attribute.ID, key_id)):
        # Drain the search so the session's find operation is finalized.
        matches = list(
            session.get_objects(
                {
                    Attribute.CLASS: ObjectClass.PRIVATE_KEY,
                    attribute: value,
                }
            )
        )
        if matches:
            return attribute.name
    return None


def create_user_keypair(
    session: pkcs11.Session,
    label: str,
    key_id: bytes,
) -> UserKeyPair:
    """Generate the RSA-2048 user key pair (public exponent 3) on the token."""
    try:
        collision = _find_existing_private_key(session, label, key_id)
    except Exception as exc:
        _logger.exception("Failed to search token for label=%s", label)
        raise BoundaryError(
            f"Failed to search token for key '{label}': {describe_exception(exc)}"
        ) from exc
    if collision is not None:
        raise BoundaryError(
            f"A private key with the same {collision.lower()} as '{label}' already exists."
        )

    try:
        public_key, private_key = session.generate_keypair(
            KeyType.RSA,
            USER_KEY_BITS,
            id=key_id,
            label=label,
            store=True,
            public_template={
                Attribute.TOKEN: True,
                Attribute.PUBLIC_EXPONENT: USER_KEY_PUBLIC_EXPONENT,
            },
            private_template={
                Attribute.TOKEN: True,
                Attribute.EXTRACTABLE: True,
            },
        )
    except Exception as exc:
        _logger.exception("Failed to generate user RSA key pair label=%s", label)
        raise BoundaryError(
            f"Failed to generate user RSA key pair '{label}': {describe_exception(exc)}"
        ) from exc

    _logger.info(
        "Generated user RSA key pair label=%s bits=%d public_exponent=%d",
        label,
        USER_KEY_BITS,
        int.from_bytes(USER_KEY_PUBLIC_EXPONENT, byteorder="big"),
    )
    return UserKeyPair(
        label=label,
        key_id=key_id,
        public_key=public_key,
        private_key=private_key,
    )
