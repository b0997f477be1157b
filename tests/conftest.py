from __future__ import annotations

import datetime
import logging
import os
from pathlib import Path
from typing import Any

import pkcs11
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, keywrap, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID
from pkcs11 import Attribute, KeyType, Mechanism, ObjectClass, SlotFlag

from hsm_byok import OAEP_SHA256_PARAM, ByokConfig

USER_PIN = "1234"


class FakeHsm:
    """
    In-memory stand-in for the python-pkcs11 objects the exporter touches.

    Wraps are real: AES-KWP via cryptography.keywrap and RSA-OAEP via
    cryptography, so the outputs can be unwrapped in tests.
    """

    def __init__(self) -> None:
        self.events: list[str] = []
        self.token_present = True
        self.reject_oaep = False
        self.rejected_kwp_mechanisms: set[Any] = set()
        self.fail_on: set[str] = set()
        self.private_keys: list[FakePrivateKey] = []
        self.secret_keys: list[FakeSecretKey] = []
        self.public_objects: list[FakeRecipientKey] = []
        self.loaded_paths: list[str] = []

    def load(self, path: str) -> "FakeLibrary":
        self.events.append("load")
        self.loaded_paths.append(path)
        return FakeLibrary(self)

    def maybe_fail(self, operation: str) -> None:
        if operation in self.fail_on:
            raise pkcs11.exceptions.GeneralError()

    def count(self, event: str) -> int:
        return self.events.count(event)


def _require_mechanism_member(mechanism: Any) -> None:
    # Same check python-pkcs11 makes before calling the HSM.
    if not isinstance(mechanism, Mechanism):
        raise pkcs11.exceptions.ArgumentsBad("`mechanism` must be a Mechanism.")


class FakeLibrary:
    """Loaded module; C_Initialize on load, C_Finalize on finalize()."""

    def __init__(self, hsm: FakeHsm) -> None:
        self._hsm = hsm
        self.initialized = True

    def get_slots(self, token_present: bool = False) -> list["FakeSlot"]:
        if not self.initialized:
            raise pkcs11.exceptions.GeneralError("module is finalized")
        return [FakeSlot(self._hsm)]

    def finalize(self) -> None:
        if not self.initialized:
            raise pkcs11.exceptions.GeneralError("module is finalized")
        self._hsm.maybe_fail("finalize")
        self.initialized = False
        self._hsm.events.append("finalize")


class FakeSlot:
    def __init__(self, hsm: FakeHsm) -> None:
        self._hsm = hsm

    @property
    def flags(self) -> SlotFlag:
        if self._hsm.token_present:
            return SlotFlag.TOKEN_PRESENT | SlotFlag.HW_SLOT
        return SlotFlag.HW_SLOT

    def get_token(self) -> "FakeToken":
        return FakeToken(self._hsm)


class FakeToken:
    label = "fake-token"

    def __init__(self, hsm: FakeHsm) -> None:
        self._hsm = hsm

    def open(self, user_pin: str | None = None, rw: bool = False) -> "FakeSession":
        if user_pin != USER_PIN:
            raise pkcs11.exceptions.PinIncorrect()
        self._hsm.events.append("login")
        return FakeSession(self._hsm, rw=rw)


class FakeSession:
    def __init__(self, hsm: FakeHsm, rw: bool) -> None:
        self._hsm = hsm
        self.rw = rw

    def generate_key(
        self,
        key_type: KeyType,
        key_length: int,
        store: bool = False,
        template: dict[Attribute, Any] | None = None,
    ) -> "FakeSecretKey":
        self._hsm.maybe_fail("generate_key")
        assert key_type == KeyType.AES
        key = FakeSecretKey(self._hsm, os.urandom(key_length // 8), dict(template or {}))
        self._hsm.secret_keys.append(key)
        self._hsm.events.append("generate_key")
        return key

    def generate_keypair(
        self,
        key_type: KeyType,
        key_length: int,
        id: bytes | None = None,
        label: str | None = None,
        store: bool = True,
        public_template: dict[Attribute, Any] | None = None,
        private_template: dict[Attribute, Any] | None = None,
    ) -> tuple["FakeUserPublicKey", "FakePrivateKey"]:
        self._hsm.maybe_fail("generate_keypair")
        assert key_type == KeyType.RSA
        public_template = dict(public_template or {})
        exponent = int.from_bytes(public_template[Attribute.PUBLIC_EXPONENT], "big")
        private = rsa.generate_private_key(public_exponent=exponent, key_size=key_length)
        attrs = {Attribute.LABEL: label, Attribute.ID: id, **(private_template or {})}
        private_key = FakePrivateKey(private, attrs)
        self._hsm.private_keys.append(private_key)
        self._hsm.events.append("generate_keypair")
        return FakeUserPublicKey(private.public_key(), public_template), private_key

    def create_object(self, template: dict[Attribute, Any]) -> "FakeRecipientKey":
        self._hsm.maybe_fail("create_object")
        assert template[Attribute.CLASS] == ObjectClass.PUBLIC_KEY
        key = FakeRecipientKey(self._hsm, dict(template))
        self._hsm.public_objects.append(key)
        self._hsm.events.append("create_object")
        return key

    def get_objects(self, attrs: dict[Attribute, Any]) -> list["FakePrivateKey"]:
        matches = []
        for key in self._hsm.private_keys:
            if all(
                key.attrs.get(name) == value
                for name, value in attrs.items()
                if name != Attribute.CLASS
            ):
                matches.append(key)
        return matches

    def close(self) -> None:
        self._hsm.maybe_fail("close")
        self._hsm.events.append("logout")
        self._hsm.events.append("close")


class FakeSecretKey:
    def __init__(self, hsm: FakeHsm, value: bytes, attrs: dict[Attribute, Any]) -> None:
        self._hsm = hsm
        self.value = value
        self.attrs = attrs
        self.wrap_count = 0
        self.wrap_mechanisms: list[Mechanism] = []

    def __getitem__(self, attribute: Attribute) -> Any:
        if attribute == Attribute.VALUE:
            if self.attrs.get(Attribute.SENSITIVE, True):
                raise pkcs11.exceptions.AttributeSensitive()
            return self.value
        return self.attrs[attribute]

    def wrap_key(
        self,
        key: "FakePrivateKey",
        mechanism: Any = None,
        mechanism_param: Any = None,
    ) -> bytes:
        _require_mechanism_member(mechanism)
        self.wrap_mechanisms.append(mechanism)
        if mechanism in self._hsm.rejected_kwp_mechanisms:
            raise pkcs11.exceptions.MechanismInvalid()
        self.wrap_count += 1
        return keywrap.aes_key_wrap_with_padding(self.value, key.pkcs8_der())

    def destroy(self) -> None:
        self._hsm.maybe_fail("destroy")
        self._hsm.events.append("destroy_intermediate")


class FakeRecipientKey:
    def __init__(self, hsm: FakeHsm, attrs: dict[Attribute, Any]) -> None:
        self._hsm = hsm
        self.attrs = attrs
        self.wrap_calls: list[tuple[Any, Any]] = []

    def wrap_key(
        self,
        key: FakeSecretKey,
        mechanism: Any = None,
        mechanism_param: Any = None,
    ) -> bytes:
        _require_mechanism_member(mechanism)
        self.wrap_calls.append((mechanism, mechanism_param))
        if self._hsm.reject_oaep:
            raise pkcs11.exceptions.MechanismParamInvalid()
        assert mechanism == Mechanism.RSA_PKCS_OAEP
        assert mechanism_param == OAEP_SHA256_PARAM
        public_key = rsa.RSAPublicNumbers(
            e=int.from_bytes(self.attrs[Attribute.PUBLIC_EXPONENT], "big"),
            n=int.from_bytes(self.attrs[Attribute.MODULUS], "big"),
        ).public_key()
        return public_key.encrypt(key.value, oaep_sha256())

    def destroy(self) -> None:
        self._hsm.events.append("destroy_recipient")


class FakeUserPublicKey:
    def __init__(self, public_key: rsa.RSAPublicKey, attrs: dict[Attribute, Any]) -> None:
        self.public_key = public_key
        self.attrs = attrs


class FakePrivateKey:
    def __init__(self, private_key: rsa.RSAPrivateKey, attrs: dict[Attribute, Any]) -> None:
        self.private_key = private_key
        self.attrs = attrs

    def pkcs8_der(self) -> bytes:
        return self.private_key.private_bytes(
            serialization.Encoding.DER,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )


def oaep_sha256() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


@pytest.fixture(scope="session")
def recipient_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=4096)


@pytest.fixture(scope="session")
def recipient_spki_pem(recipient_private_key: rsa.RSAPrivateKey) -> str:
    return (
        recipient_private_key.public_key()
        .public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode("ascii")
    )


@pytest.fixture(scope="session")
def recipient_certificate_pem(recipient_private_key: rsa.RSAPrivateKey) -> str:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "BYOK Recipient")])
    now = datetime.datetime.now(datetime.timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(recipient_private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=1))
        .sign(recipient_private_key, hashes.SHA256())
    )
    return certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")


@pytest.fixture(autouse=True)
def _reset_byok_logger():
    yield
    logger = logging.getLogger("hsm_byok")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def fake_hsm() -> FakeHsm:
    return FakeHsm()


@pytest.fixture
def byok_env(
    tmp_path: Path, recipient_spki_pem: str, monkeypatch: pytest.MonkeyPatch
) -> dict[str, Path]:
    monkeypatch.setenv("HSM_USER_PIN", USER_PIN)
    recipient_file = tmp_path / "salesforce_rsa_pub"
    recipient_file.write_text(recipient_spki_pem, encoding="utf-8")
    return {
        "recipient_file": recipient_file,
        "wrapped_aes_file": tmp_path / "out" / "oaep_wrapped_intermediate_aes_key.b64",
        "wrapped_rsa_file": tmp_path / "out" / "aes_wrapped_user_rsa_key.b64",
    }


@pytest.fixture
def make_config(byok_env: dict[str, Path]):
    def _make(**overrides: Any) -> ByokConfig:
        values: dict[str, Any] = {
            "module_path": "/fake/libsofthsm2.so",
            "module_name": "FakeHSM",
            "recipient_key_file": str(byok_env["recipient_file"]),
            "wrapped_intermediate_file": str(byok_env["wrapped_aes_file"]),
            "wrapped_private_key_file": str(byok_env["wrapped_rsa_file"]),
        }
        values.update(overrides)
        return ByokConfig(**values)

    return _make
