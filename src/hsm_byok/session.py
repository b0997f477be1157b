from __future__ import annotations

import logging
from typing import Any, Callable

import pkcs11
from pkcs11 import SlotFlag

from .config import ByokConfig
from .exceptions import BoundaryError, ByokError, describe_exception

_logger = logging.getLogger("hsm_byok.session")


class BoundarySession:
    """
    Scoped access to one logged-in read/write session on the HSM.

    open() loads the module, selects the slot, checks that a token is
    present and logs in. close() logs out, closes the session and finalizes
    the module; it runs at most once per successful open().
    """

    def __init__(
        self,
        config: ByokConfig,
        *,
        library_loader: Callable[[str], Any] = pkcs11.lib,
    ) -> None:
        self._config = config
        self._library_loader = library_loader
        self._lib: Any = None
        self._session: pkcs11.Session | None = None

    def __enter__(self) -> "BoundarySession":
        self.open()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    @property
    def session(self) -> pkcs11.Session:
        if self._session is None:
            raise BoundaryError("Session is not open.")
        return self._session

    def open(self) -> None:
        if self._session is not None:
            _logger.debug("HSM session already open.")
            return

        try:
            _logger.info(
                "Loading PKCS#11 module name=%s path=%s",
                self._config.module_name,
                self._config.module_path,
            )
            self._lib = self._library_loader(self._config.module_path)
        except Exception as exc:
            _logger.exception("Failed to load PKCS#11 module.")
            raise BoundaryError(
                f"Failed to load PKCS#11 module '{self._config.module_name}': "
                f"{describe_exception(exc)}"
            ) from exc

        try:
            slot = self._select_slot()
            token = slot.get_token()
            self._session = token.open(user_pin=self._config.user_pin(), rw=True)
        except ByokError:
            self._release_module(propagating=True)
            raise
        except Exception as exc:
            _logger.exception("Failed to open HSM session.")
            self._release_module(propagating=True)
            raise BoundaryError(
                f"Failed to open HSM session: {describe_exception(exc)}"
            ) from exc
        _logger.info("HSM session opened and logged in.")

    def _select_slot(self) -> Any:
        slots = list(self._lib.get_slots(token_present=False))
        if self._config.token_label:
            for slot in slots:
                if not slot.flags & SlotFlag.TOKEN_PRESENT:
                    continue
                if slot.get_token().label == self._config.token_label:
                    _logger.info(
                        "Using slot with token_label=%s", self._config.token_label
                    )
                    return slot
            raise BoundaryError(
                f"No slot holds a token labelled '{self._config.token_label}'."
            )

        slot_no = self._config.slot_no or 0
        if slot_no >= len(slots):
            raise BoundaryError(
                f"Slot index {slot_no} is out of range ({len(slots)} slots available)."
            )
        slot = slots[slot_no]
        if not slot.flags & SlotFlag.TOKEN_PRESENT:
            raise BoundaryError(f"Slot {slot_no} is not initialized (no token present).")
        _logger.info("Using slot index=%d", slot_no)
        return slot

    def _release_module(self, *, propagating: bool = False) -> None:
        """
        Finalize the PKCS#11 module.

        With propagating=True another error is already on its way to the
        caller, so a failed finalize is only logged.
        """
        if self._lib is None:
            return
        lib, self._lib = self._lib, None
        try:
            lib.finalize()
        except Exception as exc:
            _logger.exception("Failed to finalize PKCS#11 module.")
            if propagating:
                return
            raise BoundaryError(
                f"Failed to finalize PKCS#11 module '{self._config.module_name}': "
                f"{describe_exception(exc)}"
            ) from exc
        _logger.info("Finalized PKCS#11 module name=%s", self._config.module_name)

    def close(self) -> None:
        if self._session is None:
            _logger.debug("HSM session already closed.")
            self._release_module()
            return

        session, self._session = self._session, None
        try:
            # Session.close() logs the user out before closing.
            session.close()
        except Exception as exc:
            _logger.exception("Failed to close HSM session.")
            self._release_module(propagating=True)
            raise BoundaryError(
                f"Failed to close HSM session: {describe_exception(exc)}"
            ) from exc
        _logger.info("Logged out and closed HSM session.")
        self._release_module()
