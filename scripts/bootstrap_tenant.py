#!/usr/bin/env python3
"""Seed a tenant, an OAuth client and a first user into a persisted store.

Usage:
    MEMORY_STORE_PERSIST=true SHARED_FS_ROOT=/srv/tenantauth \\
        python scripts/bootstrap_tenant.py --tenant acme --domain auth.acme.test \\
        --client-id acme-web --redirect-uri https://app.acme.test/callback \\
        --email owner@acme.test --password 'S3cure-Passw0rd!'

Omit --client-secret for a public (PKCE-only) client. Pass --tenant '' to
seed the default tenant.

Environment Variables:
    SHARED_FS_ROOT: directory holding state/store.json
    MEMORY_STORE_PERSIST: must be true, otherwise nothing is written
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap(args: argparse.Namespace) -> dict:
    """Create whatever is missing and report what happened per record."""
    # Import here so the environment is read after argument parsing
    from tenantauth.service.passwords import hash_password
    from tenantauth.service.runtime import get_runtime
    from tenantauth.storage.models import Client

    runtime = get_runtime()
    store = runtime.store
    result: dict = {"tenant_id": args.tenant}

    if store.get_tenant(args.tenant) is None:
        if args.dry_run:
            result["tenant"] = "dry_run"
        else:
            store.create_tenant(args.tenant, args.tenant_name or args.tenant, domain=args.domain)
            result["tenant"] = "created"
    else:
        result["tenant"] = "exists"

    if args.client_id:
        if store.get_client(args.client_id, args.tenant) is not None:
            result["client"] = "exists"
        elif args.dry_run:
            result["client"] = "dry_run"
        else:
            store.create_client(
                Client(
                    client_id=args.client_id,
                    tenant_id=args.tenant,
                    name=args.client_name or args.client_id,
                    secret_hash=hash_password(args.client_secret) if args.client_secret else None,
                    redirect_uris=list(args.redirect_uri or []),
                )
            )
            result["client"] = "created"

    if args.email:
        existing = store.get_user_by_email(args.email, args.tenant)
        if existing is not None:
            result["user"] = "exists"
            result["user_id"] = existing.id
        elif args.dry_run:
            result["user"] = "dry_run"
        else:
            user = store.create_user(
                args.email,
                tenant_id=args.tenant,
                scopes=args.scope or ["read", "write", "openid", "profile", "email"],
                groups=args.group or [],
            )
            store.save_password(user.id, args.tenant, hash_password(args.password))
            result["user"] = "created"
            result["user_id"] = user.id

    return result


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a tenant for tenantauth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--tenant", default=os.environ.get("BOOTSTRAP_TENANT", ""))
    parser.add_argument("--tenant-name", default=None)
    parser.add_argument("--domain", default=None, help="Host name that maps to this tenant")
    parser.add_argument("--client-id", default=None)
    parser.add_argument("--client-name", default=None)
    parser.add_argument("--client-secret", default=os.environ.get("BOOTSTRAP_CLIENT_SECRET"))
    parser.add_argument("--redirect-uri", action="append", help="May be repeated")
    parser.add_argument("--email", default=os.environ.get("BOOTSTRAP_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("BOOTSTRAP_PASSWORD"))
    parser.add_argument("--scope", action="append", help="User scope; may be repeated")
    parser.add_argument("--group", action="append", help="User group; may be repeated")
    parser.add_argument("--dry-run", action="store_true")

    args = parser.parse_args()

    if args.email and not args.password:
        print("Error: --password or BOOTSTRAP_PASSWORD is required with --email")
        sys.exit(1)
    if args.client_id and not args.redirect_uri:
        print("Error: at least one --redirect-uri is required with --client-id")
        sys.exit(1)
    if os.environ.get("MEMORY_STORE_PERSIST", "").lower() not in {"1", "true", "yes"}:
        print("Warning: MEMORY_STORE_PERSIST is not set; nothing will survive this process")

    result = bootstrap(args)
    for key, value in result.items():
        print(f"{key}: {value}")


if __name__ == "__main__":
    main()
