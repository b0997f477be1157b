from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, TypeVar

import pkcs11

from .config import ByokConfig
from .exceptions import BoundaryError, ByokError, describe_exception
from .keygen import (
    UserKeyPair,
    create_intermediate_key,
    create_user_keypair,
    make_key_label,
)
from .recipient import (
    RecipientPublicKey,
    import_recipient_public_key,
    read_recipient_public_key,
)
from .session import BoundarySession
from .wrapping import WrapOutcome, WrappingEngine
from .writer import encode_and_persist

_logger = logging.getLogger("hsm_byok.exporter")

T = TypeVar("T")


class ExportStage(str, Enum):
    INIT = "init"
    IMPORT_RECIPIENT_KEY = "import_recipient_key"
    GENERATE_INTERMEDIATE = "generate_intermediate"
    WRAP_INTERMEDIATE = "wrap_intermediate"
    GENERATE_USER_KEYPAIR = "generate_user_keypair"
    WRAP_PRIVATE_KEY = "wrap_private_key"
    PERSIST = "persist"
    CLEANUP = "cleanup"


@dataclass(frozen=True)
class ExportResult:
    """Outcome of a successful export run."""

    label: str
    key_id: bytes
    wrapped_private_key_file: Path
    wrapped_intermediate_file: Path
    used_local_oaep: bool

    def to_dict(self) -> dict[str, str | bool]:
        return {
            "label": self.label,
            "key_id_hex": self.key_id.hex(),
            "wrapped_private_key_file": str(self.wrapped_private_key_file),
            "wrapped_intermediate_file": str(self.wrapped_intermediate_file),
            "used_local_oaep": self.used_local_oaep,
        }


class ByokExporter:
    """
    Runs one BYOK generate-and-wrap cycle against the HSM.

    Stages run strictly in order:
    init -> import_recipient_key -> generate_intermediate -> wrap_intermediate
    -> generate_user_keypair -> wrap_private_key -> persist -> cleanup.

    Once init succeeds, cleanup runs exactly once on every exit path. Errors
    are tagged with the failing stage and re-raised to the caller.
    """

    def __init__(
        self,
        config: ByokConfig,
        *,
        library_loader: Callable[[str], Any] = pkcs11.lib,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._library_loader = library_loader
        self._clock = clock
        self._engine = WrappingEngine(config)

    def _run_stage(self, stage: ExportStage, func: Callable[..., T], *args: Any) -> T:
        _logger.debug("Entering stage %s", stage.value)
        try:
            return func(*args)
        except ByokError as exc:
            if exc.stage is None:
                exc.stage = stage.value
            _logger.error("Stage %s failed: %s", stage.value, exc)
            raise
        except Exception as exc:
            _logger.exception("Stage %s failed unexpectedly.", stage.value)
            error = BoundaryError(
                f"Unexpected failure during {stage.value}: {describe_exception(exc)}"
            )
            error.stage = stage.value
            raise error from exc

    def run(self) -> ExportResult:
        boundary = BoundarySession(self._config, library_loader=self._library_loader)
        self._run_stage(ExportStage.INIT, boundary.open)

        intermediate_key: pkcs11.SecretKey | None = None
        try:
            session = boundary.session
            recipient, wrapping_key = self._run_stage(
                ExportStage.IMPORT_RECIPIENT_KEY, self.import_recipient_key, session
            )
            intermediate_key = self._run_stage(
                ExportStage.GENERATE_INTERMEDIATE, self.generate_intermediate, session
            )
            outcome = self._run_stage(
                ExportStage.WRAP_INTERMEDIATE,
                self.wrap_intermediate,
                wrapping_key,
                intermediate_key,
                recipient,
            )
            keypair = self._run_stage(
                ExportStage.GENERATE_USER_KEYPAIR, self.generate_user_keypair, session
            )
            wrapped_private_key = self._run_stage(
                ExportStage.WRAP_PRIVATE_KEY,
                self.wrap_private_key,
                intermediate_key,
                keypair,
            )
            private_key_file, intermediate_file = self._run_stage(
                ExportStage.PERSIST,
                self.persist,
                wrapped_private_key,
                outcome.blob,
            )
        except BaseException:
            self.cleanup(boundary, intermediate_key, propagating=True)
            raise

        self._run_stage(ExportStage.CLEANUP, self.cleanup, boundary, intermediate_key)
        _logger.info("BYOK export complete label=%s", keypair.label)
        return ExportResult(
            label=keypair.label,
            key_id=keypair.key_id,
            wrapped_private_key_file=private_key_file,
            wrapped_intermediate_file=intermediate_file,
            used_local_oaep=outcome.used_local_oaep,
        )

    def import_recipient_key(
        self, session: pkcs11.Session
    ) -> tuple[RecipientPublicKey, pkcs11.PublicKey]:
        recipient = read_recipient_public_key(self._config.recipient_key_file)
        return recipient, import_recipient_public_key(session, recipient)

    def generate_intermediate(self, session: pkcs11.Session) -> pkcs11.SecretKey:
        return create_intermediate_key(
            session, sensitive=not self._config.unsafe_local_oaep
        )

    def wrap_intermediate(
        self,
        wrapping_key: pkcs11.PublicKey,
        intermediate_key: pkcs11.SecretKey,
        recipient: RecipientPublicKey,
    ) -> WrapOutcome:
        try:
            return self._engine.wrap_intermediate(wrapping_key, intermediate_key, recipient)
        finally:
            try:
                wrapping_key.destroy()
                _logger.debug("Destroyed ephemeral recipient key object.")
            except Exception as exc:
                # Session objects are discarded when the session closes.
                _logger.warning(
                    "Could not destroy recipient key object: %s", describe_exception(exc)
                )

    def generate_user_keypair(self, session: pkcs11.Session) -> UserKeyPair:
        label, key_id = make_key_label(self._config.label_prefix, now=self._clock())
        _logger.info("Creating RSA private/public key object in HSM: label=%s", label)
        return create_user_keypair(session, label, key_id)

    def wrap_private_key(
        self, intermediate_key: pkcs11.SecretKey, keypair: UserKeyPair
    ) -> bytes:
        return self._engine.wrap_private_key(intermediate_key, keypair.private_key)

    def persist(
        self, wrapped_private_key: bytes, wrapped_intermediate: bytes
    ) -> tuple[Path, Path]:
        private_key_file = encode_and_persist(
            self._config.wrapped_private_key_file, wrapped_private_key
        )
        intermediate_file = encode_and_persist(
            self._config.wrapped_intermediate_file, wrapped_intermediate
        )
        return private_key_file, intermediate_file

    def cleanup(
        self,
        boundary: BoundarySession,
        intermediate_key: pkcs11.SecretKey | None,
        *,
        propagating: bool = False,
    ) -> None:
        """
        Destroy the intermediate key, log out, close the session, release the module.

        Every step is attempted. With propagating=True an earlier error is
        already on its way to the caller, so cleanup failures are only logged.
        """
        failures: list[Exception] = []
        if intermediate_key is not None:
            try:
                intermediate_key.destroy()
                _logger.info("Destroyed intermediate AES key.")
            except Exception as exc:
                _logger.exception("Failed to destroy intermediate AES key.")
                failures.append(exc)

        try:
            boundary.close()
        except Exception as exc:
            failures.append(exc)

        if failures and not propagating:
            raise BoundaryError(
                f"Cleanup failed: {describe_exception(failures[0])}"
            ) from failures[0]
