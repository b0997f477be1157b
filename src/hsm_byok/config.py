from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .exceptions import ByokConfigurationError

# SafeNet Luna vendor-defined CKM_AES_KWP.
SAFENET_CKM_AES_KWP = 0x80000171

DEFAULT_RECIPIENT_KEY_FILE = "salesforce_rsa_pub"
DEFAULT_WRAPPED_INTERMEDIATE_FILE = "oaep_wrapped_intermediate_aes_key.b64"
DEFAULT_WRAPPED_PRIVATE_KEY_FILE = "aes_wrapped_user_rsa_key.b64"
DEFAULT_LABEL_PREFIX = "MC_"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _parse_bool(value: str, name: str) -> bool:
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ByokConfigurationError(f"{name} must be a boolean, got: {value}")


def _parse_int(value: str, name: str) -> int:
    try:
        return int(value.strip(), 0)
    except ValueError as exc:
        raise ByokConfigurationError(f"{name} must be an integer, got: {value}") from exc


@dataclass(frozen=True)
class ByokConfig:
    """Runtime configuration for one BYOK generate-and-wrap run."""

    module_path: str
    module_name: str = "PKCS#11 module"
    slot_no: int | None = None
    token_label: str | None = None
    user_pin_env: str = "HSM_USER_PIN"
    use_vendor_kwp: bool = False
    vendor_kwp_mechanism: int = SAFENET_CKM_AES_KWP
    unsafe_local_oaep: bool = False
    recipient_key_file: str = DEFAULT_RECIPIENT_KEY_FILE
    wrapped_intermediate_file: str = DEFAULT_WRAPPED_INTERMEDIATE_FILE
    wrapped_private_key_file: str = DEFAULT_WRAPPED_PRIVATE_KEY_FILE
    label_prefix: str = DEFAULT_LABEL_PREFIX

    def __post_init__(self) -> None:
        if not self.module_path:
            raise ByokConfigurationError("module_path is required.")
        if self.slot_no is not None and self.slot_no < 0:
            raise ByokConfigurationError(f"slot_no must be >= 0, got: {self.slot_no}")
        if self.vendor_kwp_mechanism < 0:
            raise ByokConfigurationError("vendor_kwp_mechanism must be >= 0.")

    @classmethod
    def from_env(cls) -> "ByokConfig":
        module_path = os.environ.get("HSM_PKCS11_MODULE")
        if not module_path:
            raise ByokConfigurationError("HSM_PKCS11_MODULE is required.")
        if not Path(module_path).exists():
            raise ByokConfigurationError(
                f"PKCS#11 module path does not exist: {module_path}"
            )

        slot_raw = os.environ.get("HSM_SLOT")
        slot_no = _parse_int(slot_raw, "HSM_SLOT") if slot_raw else None

        vendor_raw = os.environ.get("HSM_BYOK_VENDOR_KWP_MECHANISM")
        vendor_kwp_mechanism = (
            _parse_int(vendor_raw, "HSM_BYOK_VENDOR_KWP_MECHANISM")
            if vendor_raw
            else SAFENET_CKM_AES_KWP
        )

        return cls(
            module_path=module_path,
            module_name=os.environ.get("HSM_PKCS11_MODULE_NAME", "PKCS#11 module"),
            slot_no=slot_no,
            token_label=os.environ.get("HSM_TOKEN_LABEL") or None,
            user_pin_env=os.environ.get("HSM_USER_PIN_ENV", "HSM_USER_PIN"),
            use_vendor_kwp=_parse_bool(
                os.environ.get("HSM_BYOK_USE_VENDOR_KWP", "false"),
                "HSM_BYOK_USE_VENDOR_KWP",
            ),
            vendor_kwp_mechanism=vendor_kwp_mechanism,
            unsafe_local_oaep=_parse_bool(
                os.environ.get("HSM_BYOK_UNSAFE_LOCAL_OAEP", "false"),
                "HSM_BYOK_UNSAFE_LOCAL_OAEP",
            ),
            recipient_key_file=os.environ.get(
                "HSM_BYOK_RECIPIENT_KEY_FILE", DEFAULT_RECIPIENT_KEY_FILE
            ),
            wrapped_intermediate_file=os.environ.get(
                "HSM_BYOK_WRAPPED_AES_FILE", DEFAULT_WRAPPED_INTERMEDIATE_FILE
            ),
            wrapped_private_key_file=os.environ.get(
                "HSM_BYOK_WRAPPED_RSA_FILE", DEFAULT_WRAPPED_PRIVATE_KEY_FILE
            ),
            label_prefix=os.environ.get("HSM_BYOK_LABEL_PREFIX", DEFAULT_LABEL_PREFIX),
        )

    def user_pin(self) -> str:
        pin = os.environ.get(self.user_pin_env)
        if not pin:
            raise ByokConfigurationError(f"{self.user_pin_env} is required.")
        return pin
