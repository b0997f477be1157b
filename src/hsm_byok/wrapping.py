from __future__ import annotations

import logging
from dataclasses import dataclass

import pkcs11
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from pkcs11 import MGF, Attribute, Mechanism

from .config import ByokConfig
from .exceptions import WrapError, describe_exception
from .recipient import RecipientPublicKey

OAEP_SHA256_PARAM: tuple[Mechanism, MGF, bytes | None] = (
    Mechanism.SHA256,
    MGF.SHA256,
    None,
)

CKM_VENDOR_DEFINED = 0x80000000
VENDOR_MECHANISM_PREFIX = "VENDOR_"

_logger = logging.getLogger("hsm_byok.wrapping")


def vendor_mechanism(code: int) -> Mechanism:
    """
    Return a ``Mechanism`` member for a raw mechanism code.

    python-pkcs11 rejects anything that is not a ``Mechanism`` member before
    the HSM is called, and the enum does not list vendor-defined codes such
    as SafeNet's CKM_AES_KWP. Unknown codes are registered once as a member
    named ``VENDOR_0x<code>``, so later lookups return the same object.
    """
    existing = Mechanism._value2member_map_.get(code)
    if existing is not None:
        return existing
    if code < CKM_VENDOR_DEFINED:
        raise WrapError(
            f"Mechanism 0x{code:08X} is not known to python-pkcs11 and is not "
            "in the vendor-defined range."
        )
    member = int.__new__(Mechanism, code)
    member._name_ = f"{VENDOR_MECHANISM_PREFIX}0x{code:08X}"
    member._value_ = code
    Mechanism._value2member_map_[code] = member
    _logger.debug("Registered vendor mechanism %s", member._name_)
    return member


def _mechanism_name(mechanism: Mechanism) -> str:
    if mechanism.name.startswith(VENDOR_MECHANISM_PREFIX):
        return mechanism.name[len(VENDOR_MECHANISM_PREFIX):]
    if mechanism >= CKM_VENDOR_DEFINED:
        return f"{mechanism.name} (0x{int(mechanism):08X})"
    return mechanism.name


@dataclass(frozen=True)
class WrapOutcome:
    """Wrapped intermediate key and which path produced it."""

    blob: bytes
    used_local_oaep: bool = False


class WrappingEngine:
    """
    Wraps the exported keys.

    The user private key is wrapped under the intermediate AES key with
    AES key wrap with padding. The intermediate key is wrapped under the
    recipient RSA key with RSA-OAEP (SHA-256, MGF1-SHA-256), inside the HSM,
    or on the host when the config explicitly opts into it.
    """

    def __init__(self, config: ByokConfig) -> None:
        self._config = config

    @property
    def kwp_mechanism(self) -> Mechanism:
        if self._config.use_vendor_kwp:
            return vendor_mechanism(self._config.vendor_kwp_mechanism)
        return Mechanism.AES_KEY_WRAP_PAD

    def wrap_private_key(
        self,
        intermediate_key: pkcs11.SecretKey,
        private_key: pkcs11.PrivateKey,
    ) -> bytes:
        mechanism = self.kwp_mechanism
        try:
            wrapped = intermediate_key.wrap_key(private_key, mechanism=mechanism)
        except Exception as exc:
            _logger.exception(
                "Failed to wrap private key mechanism=%s", _mechanism_name(mechanism)
            )
            raise WrapError(
                f"Failed to wrap private key using {_mechanism_name(mechanism)}: "
                f"{describe_exception(exc)}"
            ) from exc
        _logger.info(
            "Wrapped private key mechanism=%s wrapped_size=%d",
            _mechanism_name(mechanism),
            len(wrapped),
        )
        return wrapped

    def wrap_intermediate_in_boundary(
        self,
        wrapping_key: pkcs11.PublicKey,
        intermediate_key: pkcs11.SecretKey,
    ) -> bytes:
        try:
            wrapped = wrapping_key.wrap_key(
                intermediate_key,
                mechanism=Mechanism.RSA_PKCS_OAEP,
                mechanism_param=OAEP_SHA256_PARAM,
            )
        except Exception as exc:
            raise WrapError(
                "Failed to wrap intermediate key using RSA_PKCS_OAEP "
                f"(the HSM may not support OAEP with SHA256): {describe_exception(exc)}"
            ) from exc
        _logger.info(
            "Wrapped intermediate key in HSM mechanism=RSA_PKCS_OAEP wrapped_size=%d",
            len(wrapped),
        )
        return wrapped

    def wrap_intermediate(
        self,
        wrapping_key: pkcs11.PublicKey,
        intermediate_key: pkcs11.SecretKey,
        recipient: RecipientPublicKey,
    ) -> WrapOutcome:
        """
        Wrap the intermediate key for the recipient.

        A failed HSM wrap is re-raised unless unsafe_local_oaep is set, in
        which case the key value is read out and wrapped on the host instead.
        """
        try:
            return WrapOutcome(
                blob=self.wrap_intermediate_in_boundary(wrapping_key, intermediate_key)
            )
        except WrapError as exc:
            if not self._config.unsafe_local_oaep:
                _logger.error("%s", exc)
                raise
            _logger.warning(
                "HSM OAEP wrap failed, falling back to local wrap: %s", exc
            )

        try:
            key_value = bytes(intermediate_key[Attribute.VALUE])
        except Exception as exc:
            _logger.exception("Failed to read intermediate key value.")
            raise WrapError(
                "Cannot read intermediate key value for local wrap: "
                f"{describe_exception(exc)}"
            ) from exc
        return WrapOutcome(
            blob=self.wrap_locally(recipient, key_value),
            used_local_oaep=True,
        )

    def wrap_locally(self, recipient: RecipientPublicKey, plaintext_key: bytes) -> bytes:
        """RSA-OAEP wrap on the host. Exposes the key value outside the HSM."""
        if not self._config.unsafe_local_oaep:
            raise WrapError("Local OAEP wrapping is disabled (unsafe_local_oaep=False).")

        _logger.warning("WARNING: Using local computer to wrap the AES key")
        try:
            wrapped = recipient.to_cryptography().encrypt(
                plaintext_key,
                padding.OAEP(
                    mgf=padding.MGF1(algorithm=hashes.SHA256()),
                    algorithm=hashes.SHA256(),
                    label=None,
                ),
            )
        except Exception as exc:
            _logger.exception("Local OAEP wrap failed.")
            raise WrapError(f"Local OAEP wrap failed: {describe_exception(exc)}") from exc
        _logger.info("Wrapped intermediate key locally wrapped_size=%d", len(wrapped))
        return wrapped
