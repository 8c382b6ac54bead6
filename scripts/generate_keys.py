#!/usr/bin/env python3
"""Generate RSA signing key pairs for access and refresh tokens.

Usage:
    python scripts/generate_keys.py --out-dir ./keys

    # Then point the services at them:
    JWT_ACCESS_PRIVATE_KEY_PATH=./keys/access_private.pem
    JWT_ACCESS_PUBLIC_KEY_PATH=./keys/access_public.pem
    JWT_REFRESH_PRIVATE_KEY_PATH=./keys/refresh_private.pem
    JWT_REFRESH_PUBLIC_KEY_PATH=./keys/refresh_public.pem

A verification-only deployment (the gateway, when the auth core runs
elsewhere) needs just the *_public.pem files.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

TOKEN_CLASSES = ("access", "refresh")


def write_key_pair(out_dir: Path, token_class: str, key_size: int, force: bool = False) -> dict:
    """Write ``{class}_private.pem`` (mode 0600) and ``{class}_public.pem``."""
    from tokensmith.service.tokens import (
        generate_private_key,
        private_key_to_pem,
        public_key_to_pem,
    )

    private_path = out_dir / f"{token_class}_private.pem"
    public_path = out_dir / f"{token_class}_public.pem"
    if not force and (private_path.exists() or public_path.exists()):
        raise FileExistsError(f"{private_path} or {public_path} already exists; pass --force")

    private_key = generate_private_key(key_size)
    private_path.write_bytes(private_key_to_pem(private_key))
    os.chmod(private_path, 0o600)
    public_path.write_bytes(public_key_to_pem(private_key.public_key()))
    return {"class": token_class, "private": str(private_path), "public": str(public_path)}


def main():
    parser = argparse.ArgumentParser(
        description="Generate tokensmith signing keys",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--out-dir", default="keys", help="Directory for the PEM files")
    parser.add_argument("--key-size", type=int, default=2048, help="RSA modulus size in bits")
    parser.add_argument("--force", action="store_true", help="Overwrite existing key files")

    args = parser.parse_args()

    if args.key_size < 2048:
        print("Error: --key-size must be at least 2048")
        sys.exit(1)

    out_dir = Path(args.out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    try:
        for token_class in TOKEN_CLASSES:
            written = write_key_pair(out_dir, token_class, args.key_size, force=args.force)
            print(f"{written['class']}: {written['private']}, {written['public']}")
    except FileExistsError as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
