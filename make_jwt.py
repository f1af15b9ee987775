"""Utility script to generate an App Store Connect JWT."""

from __future__ import annotations

import argparse
import os
import sys
from typing import List, Optional

from dotenv import load_dotenv

from apple_store import mint_token, validate_issuer_id, validate_key_id
from exporter_settings import resolve_app_store_credentials
from store_errors import CredentialError


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    parser = argparse.ArgumentParser(
        description="Generate a JWT for the App Store Connect API using environment configuration."
    )
    parser.add_argument("--issuer-id", default=os.getenv("ASC_ISSUER_ID"))
    parser.add_argument("--key-id", default=os.getenv("ASC_KEY_ID"))
    parser.add_argument("--private-key-file", default=os.getenv("ASC_PRIVATE_KEY_FILE"))
    args = parser.parse_args(argv)

    credentials = resolve_app_store_credentials(
        args.issuer_id, args.key_id, args.private_key_file, os.getenv("ASC_PRIVATE_KEY")
    )
    if credentials is None:
        print(
            "App Store Connect credentials are incomplete: set ASC_ISSUER_ID, ASC_KEY_ID "
            "and ASC_PRIVATE_KEY or ASC_PRIVATE_KEY_FILE.",
            file=sys.stderr,
        )
        return 1

    try:
        token = mint_token(
            validate_issuer_id(credentials.issuer_id),
            validate_key_id(credentials.key_id),
            credentials.private_key,
        )
    except CredentialError as exc:
        print(f"Invalid App Store Connect credentials: {exc}", file=sys.stderr)
        return 1

    print(token)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
