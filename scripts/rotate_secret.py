#!/usr/bin/env python3
"""Rotate the persisted access-token signing secret.

Usage:
    # Rotate the secret stored under $SHARED_FS_ROOT/.jwt_secret:
    python scripts/rotate_secret.py

    # Point at a different shared root, or preview without writing:
    python scripts/rotate_secret.py --fs-root /srv/mobileauth --dry-run

The new secret takes effect when the service restarts. Every access token
signed with the old secret stops validating; refresh tokens are stored
server-side and stay valid, so clients recover by calling /v1/auth/refresh.

Environment Variables:
    SHARED_FS_ROOT: Directory holding the persisted secret
    JWT_SECRET: If set, the service ignores the persisted file; rotate it in
        your secret manager instead
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def rotate_secret(fs_root: str | None, dry_run: bool = False) -> dict:
    """Replace the persisted signing secret.

    Returns:
        dict with the secret path and status ('rotated', 'created' or 'dry_run')
    """
    from mobileauth.config import generate_secret, secret_path, write_secret
    from mobileauth.logging import get_logger

    logger = get_logger("mobileauth.scripts.rotate_secret")
    path = secret_path(fs_root)
    existed = path.exists()

    if dry_run:
        action = "replace" if existed else "create"
        print(f"[DRY RUN] Would {action} signing secret at {path}")
        return {"path": str(path), "status": "dry_run"}

    write_secret(path, generate_secret())
    status = "rotated" if existed else "created"
    logger.info("jwt_secret_rotated", path=str(path), status=status)
    return {"path": str(path), "status": status}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Rotate the mobileauth access-token signing secret",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--fs-root",
        default=os.environ.get("SHARED_FS_ROOT"),
        help="Shared filesystem root (or set SHARED_FS_ROOT env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    if os.environ.get("JWT_SECRET"):
        print(
            "Warning: JWT_SECRET is set; the service uses it instead of the persisted file"
        )

    try:
        result = rotate_secret(args.fs_root, args.dry_run)
    except OSError as e:
        print(f"Error: {e}")
        return 1

    if result["status"] != "dry_run":
        print(f"Signing secret {result['status']} at {result['path']}")
        print("Restart the service to apply; existing access tokens will be rejected.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
