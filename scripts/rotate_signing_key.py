#!/usr/bin/env python3
"""Generate a new RS256 signing key so it becomes the active signer.

Usage:
    # Using environment variables:
    PEM_EXPORT_PATH=/srv/tokensmith/keys python scripts/rotate_signing_key.py

    # Or with command line args:
    python scripts/rotate_signing_key.py --key-dir /srv/tokensmith/keys --bits 4096

Existing keys are kept so tokens they signed keep verifying. Running services
pick the new key up once their cached key listing expires.

Environment Variables:
    PEM_EXPORT_PATH: Directory holding one sub-directory per key id
    SIGNING_KEY_BITS: RSA modulus size (default 4096)
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def rotate(key_dir: str, bits: int, dry_run: bool = False) -> dict:
    """Generate a key pair under ``key_dir``.

    Returns:
        dict with kid, active_kid, created_at, key_count and status
        ('rotated', 'rotated_inactive' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from tokensmith.service.keyring import KeyRing

    # No memo: every listing reads the directory as it is now
    keyring = KeyRing(key_dir, key_size=bits, keys_ttl_seconds=0)
    keyring.initialize()
    existing = keyring.list_keys()
    current = keyring.select_signing_key()

    if dry_run:
        print(f"[DRY RUN] Would add a {bits}-bit key next to {len(existing)} existing key(s)")
        return {"kid": current.kid, "key_count": len(existing), "status": "dry_run"}

    key = keyring.generate_key_pair()
    active = keyring.select_signing_key()
    print(f"Generated signing key {key.kid} (previous signer: {current.kid})")
    if active.kid != key.kid:
        print(
            f"Warning: {active.kid} is still the active signer; its creation time "
            f"is not older than the new key's"
        )
    return {
        "kid": key.kid,
        "active_kid": active.kid,
        "created_at": key.created_at.isoformat(),
        "key_count": len(existing) + 1,
        "status": "rotated" if active.kid == key.kid else "rotated_inactive",
    }


def main():
    from tokensmith.config import MIN_SIGNING_KEY_BITS, get_settings

    settings = get_settings()
    parser = argparse.ArgumentParser(
        description="Rotate the RS256 signing key",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--key-dir",
        default=settings.key_dir,
        help="Key directory (or set PEM_EXPORT_PATH env var)",
    )
    parser.add_argument(
        "--bits",
        type=int,
        default=settings.signing_key_bits,
        help="RSA modulus size in bits (or set SIGNING_KEY_BITS env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if args.bits < MIN_SIGNING_KEY_BITS:
        print(f"Error: --bits must be at least {MIN_SIGNING_KEY_BITS}")
        sys.exit(1)

    result = rotate(args.key_dir, args.bits, dry_run=args.dry_run)
    print(json.dumps(result))


if __name__ == "__main__":
    main()
