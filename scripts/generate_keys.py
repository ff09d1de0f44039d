#!/usr/bin/env python3
"""Generate an Ed25519 signing key pair for idgate.

Usage:
    python scripts/generate_keys.py
    python scripts/generate_keys.py --write /srv/idgate/signing_key

The private key is printed in the 64-byte seed+public hex form; idgate also
accepts a bare 32-byte seed in SIGNING_PRIVATE_KEY.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)


def generate_key_pair() -> tuple[str, str]:
    """Return ``(private_hex, public_hex)``; private is seed followed by public."""
    key = Ed25519PrivateKey.generate()
    seed = key.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())
    public = key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    return (seed + public).hex(), public.hex()


def write_private_key(path: Path, private_hex: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w") as fh:
        fh.write(private_hex)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Generate an Ed25519 key pair for token signing",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--write",
        type=Path,
        default=None,
        help="Also write the private key to this path (mode 0600, must not exist)",
    )
    args = parser.parse_args(argv)

    private_hex, public_hex = generate_key_pair()
    print("Ed25519 Key Pair:")
    print("-----------------")
    print(f"Private Key: {private_hex}")
    print(f"Public Key : {public_hex}")
    print()
    print("Add to your .env file as:")
    print(f"SIGNING_PRIVATE_KEY={private_hex}")

    if args.write is not None:
        try:
            write_private_key(args.write, private_hex)
        except FileExistsError:
            print(f"Error: {args.write} already exists", file=sys.stderr)
            return 1
        print(f"\nPrivate key written to {args.write}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
