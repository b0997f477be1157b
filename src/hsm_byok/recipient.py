from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import pkcs11
from asn1crypto import keys, pem, x509
from cryptography.hazmat.primitives.asymmetric import rsa
from pkcs11 import Attribute, KeyType, ObjectClass
from pkcs11.util import biginteger

from .exceptions import BoundaryError, ParseError, describe_exception

EXPECTED_RECIPIENT_BITS = 4096

_logger = logging.getLogger("hsm_byok.recipient")


@dataclass(frozen=True)
class RecipientPublicKey:
    """
    RSA public key of the party the intermediate key is exported to.

    modulus and public_exponent are unsigned big-endian byte strings taken
    verbatim from the parsed PEM.
    """

    modulus: bytes
    public_exponent: bytes
    source_type: str

    @property
    def bits(self) -> int:
        return int.from_bytes(self.modulus, byteorder="big").bit_length()

    def to_template(self) -> dict[Attribute, object]:
        return {
            Attribute.CLASS: ObjectClass.PUBLIC_KEY,
            Attribute.KEY_TYPE: KeyType.RSA,
            Attribute.TOKEN: False,
            Attribute.MODULUS: self.modulus,
            Attribute.PUBLIC_EXPONENT: self.public_exponent,
            Attribute.WRAP: True,
            Attribute.ENCRYPT: True,
        }

    def to_cryptography(self) -> rsa.RSAPublicKey:
        return rsa.RSAPublicNumbers(
            e=int.from_bytes(self.public_exponent, byteorder="big"),
            n=int.from_bytes(self.modulus, byteorder="big"),
        ).public_key()


def _rsa_public_key_from_der(pem_type: str, der_bytes: bytes) -> keys.RSAPublicKey:
    if pem_type == "RSA PUBLIC KEY":
        return keys.RSAPublicKey.load(der_bytes)

    if pem_type == "PUBLIC KEY":
        public_key_info = keys.PublicKeyInfo.load(der_bytes)
    elif pem_type == "CERTIFICATE":
        public_key_info = x509.Certificate.load(der_bytes).public_key
    else:
        raise ParseError(
            f"Unsupported PEM type '{pem_type}'. "
            "Expected PUBLIC KEY, RSA PUBLIC KEY or CERTIFICATE."
        )

    algorithm = public_key_info.algorithm
    if algorithm != "rsa":
        raise ParseError(f"Recipient key must be RSA, got: {algorithm}")
    return public_key_info["public_key"].parsed


def load_recipient_public_key(pem_text: str | bytes) -> RecipientPublicKey:
    """Parse a PEM encoded RSA public key, SPKI, PKCS#1 or X.509 certificate."""
    payload = pem_text.encode("utf-8") if isinstance(pem_text, str) else pem_text
    if not pem.detect(payload):
        raise ParseError("Recipient public key is not PEM encoded.")

    try:
        pem_type, _headers, der_bytes = pem.unarmor(payload)
        rsa_key = _rsa_public_key_from_der(pem_type, der_bytes)
        modulus = rsa_key["modulus"].native
        public_exponent = rsa_key["public_exponent"].native
    except ParseError:
        raise
    except Exception as exc:
        raise ParseError(
            f"Malformed recipient public key: {describe_exception(exc)}"
        ) from exc

    if not isinstance(modulus, int) or modulus <= 0:
        raise ParseError("Recipient public key has an invalid modulus.")
    if not isinstance(public_exponent, int) or public_exponent <= 0:
        raise ParseError("Recipient public key has an invalid public exponent.")

    recipient = RecipientPublicKey(
        modulus=biginteger(modulus),
        public_exponent=biginteger(public_exponent),
        source_type=pem_type,
    )
    if recipient.bits != EXPECTED_RECIPIENT_BITS:
        _logger.warning(
            "Recipient key is %d bits, expected %d.",
            recipient.bits,
            EXPECTED_RECIPIENT_BITS,
        )
    _logger.info(
        "Loaded recipient public key source=%s bits=%d", pem_type, recipient.bits
    )
    return recipient


def read_recipient_public_key(path: str | Path) -> RecipientPublicKey:
    try:
        pem_text = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ParseError(
            f"Cannot read recipient public key '{path}': {describe_exception(exc)}"
        ) from exc
    return load_recipient_public_key(pem_text)


def import_recipient_public_key(
    session: pkcs11.Session,
    recipient: RecipientPublicKey,
) -> pkcs11.PublicKey:
    """Create an ephemeral (session object) wrapping key from the recipient key."""
    try:
        public_key = session.create_object(recipient.to_template())
        _logger.info(
            "Imported recipient public key into HSM bits=%d", recipient.bits
        )
        return public_key
    except Exception as exc:
        _logger.exception("Failed to import recipient public key.")
        raise BoundaryError(
            f"Failed to import recipient public key: {describe_exception(exc)}"
        ) from exc
