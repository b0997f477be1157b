"""Generate keys in a PKCS#11 HSM and wrap them for BYOK export."""

from .config import SAFENET_CKM_AES_KWP, ByokConfig
from .exceptions import (
    BoundaryError,
    ByokConfigurationError,
    ByokError,
    IoError,
    ParseError,
    WrapError,
)
from .exporter import ByokExporter, ExportResult, ExportStage
from .keygen import (
    UserKeyPair,
    create_intermediate_key,
    create_user_keypair,
    make_key_label,
)
from .logging_utils import configure_logging
from .recipient import (
    RecipientPublicKey,
    import_recipient_public_key,
    load_recipient_public_key,
    read_recipient_public_key,
)
from .session import BoundarySession
from .wrapping import (
    OAEP_SHA256_PARAM,
    WrapOutcome,
    WrappingEngine,
    vendor_mechanism,
)
from .writer import encode_and_persist

__all__ = [
    "OAEP_SHA256_PARAM",
    "SAFENET_CKM_AES_KWP",
    "BoundaryError",
    "BoundarySession",
    "ByokConfig",
    "ByokConfigurationError",
    "ByokError",
    "ByokExporter",
    "ExportResult",
    "ExportStage",
    "IoError",
    "ParseError",
    "RecipientPublicKey",
    "UserKeyPair",
    "WrapError",
    "WrapOutcome",
    "WrappingEngine",
    "configure_logging",
    "create_intermediate_key",
    "create_user_keypair",
    "encode_and_persist",
    "import_recipient_public_key",
    "load_recipient_public_key",
    "make_key_label",
    "read_recipient_public_key",
    "vendor_mechanism",
]
