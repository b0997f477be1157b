from __future__ import annotations

import argparse
import dataclasses
import json
import sys
from pathlib import Path

if __package__ in (None, ""):
    repo_src = Path(__file__).resolve().parents[1] / "src"
    if str(repo_src) not in sys.path:
        sys.path.insert(0, str(repo_src))

try:
    from hsm_byok import ByokConfig, ByokError, ByokExporter, configure_logging
except ModuleNotFoundError as exc:
    if exc.name == "pkcs11":
        raise SystemExit(
            "Missing dependency: python-pkcs11\n"
            "Install it with:\n"
            "  python3 -m pip install -e .\n"
            "or:\n"
            "  python3 -m pip install python-pkcs11"
        ) from exc
    raise


class _HelpFormatter(
    argparse.RawTextHelpFormatter,
    argparse.ArgumentDefaultsHelpFormatter,
):
    """Keep multiline examples readable and include defaults."""


CLI_HELP_EPILOG = """Environment:
  Required:
    HSM_PKCS11_MODULE
    HSM_USER_PIN

  Optional:
    HSM_PKCS11_MODULE_NAME
    HSM_TOKEN_LABEL or HSM_SLOT (slot index, default 0)
    HSM_BYOK_USE_VENDOR_KWP=true          # SafeNet Luna CKM_AES_KWP
    HSM_BYOK_VENDOR_KWP_MECHANISM=0x80000171
    HSM_BYOK_UNSAFE_LOCAL_OAEP=true       # wrap the AES key on this host if the HSM cannot

Examples:
  python3 examples/byok_export.py --recipient-key-file salesforce_rsa_pub
  python3 examples/byok_export.py --recipient-key-file salesforce_rsa_pub --use-vendor-kwp --json
"""


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Generate an RSA key pair and an intermediate AES key in the HSM, "
            "then export them double-wrapped for BYOK import."
        ),
        formatter_class=_HelpFormatter,
        epilog=CLI_HELP_EPILOG,
    )
    parser.add_argument(
        "--recipient-key-file",
        default=None,
        help="PEM public key or certificate of the wrapping recipient.",
    )
    parser.add_argument(
        "--wrapped-aes-file",
        default=None,
        help="Output file for the OAEP-wrapped intermediate AES key.",
    )
    parser.add_argument(
        "--wrapped-rsa-file",
        default=None,
        help="Output file for the AES-wrapped user RSA private key.",
    )
    parser.add_argument(
        "--label-prefix",
        default=None,
        help="Prefix for the time-derived key label.",
    )
    parser.add_argument(
        "--use-vendor-kwp",
        action="store_true",
        help="Use the vendor AES-KWP mechanism code instead of CKM_AES_KEY_WRAP_PAD.",
    )
    parser.add_argument(
        "--vendor-kwp-mechanism",
        type=lambda value: int(value, 0),
        default=None,
        help="Vendor AES-KWP mechanism code, decimal or 0x hex.",
    )
    parser.add_argument(
        "--unsafe-local-oaep",
        action="store_true",
        help="UNSAFE: wrap the intermediate key on this host if the HSM cannot.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the result as JSON.",
    )
    return parser.parse_args(argv)


def _apply_overrides(config: ByokConfig, args: argparse.Namespace) -> ByokConfig:
    overrides: dict[str, object] = {}
    if args.recipient_key_file is not None:
        overrides["recipient_key_file"] = args.recipient_key_file
    if args.wrapped_aes_file is not None:
        overrides["wrapped_intermediate_file"] = args.wrapped_aes_file
    if args.wrapped_rsa_file is not None:
        overrides["wrapped_private_key_file"] = args.wrapped_rsa_file
    if args.label_prefix is not None:
        overrides["label_prefix"] = args.label_prefix
    if args.vendor_kwp_mechanism is not None:
        overrides["vendor_kwp_mechanism"] = args.vendor_kwp_mechanism
    if args.use_vendor_kwp:
        overrides["use_vendor_kwp"] = True
    if args.unsafe_local_oaep:
        overrides["unsafe_local_oaep"] = True
    return dataclasses.replace(config, **overrides)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        configure_logging(console=True)
        config = _apply_overrides(ByokConfig.from_env(), args)
        result = ByokExporter(config).run()
    except ByokError as exc:
        stage = exc.stage or "configuration"
        print(f"Export failed at stage {stage}: {exc}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, sort_keys=True))
        return 0

    print(f"Created RSA key pair in HSM: label={result.label}")
    print(f"Saved file {result.wrapped_private_key_file}")
    print(f"Saved file {result.wrapped_intermediate_file}")
    if result.used_local_oaep:
        print("WARNING: the intermediate AES key was wrapped on this host.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
