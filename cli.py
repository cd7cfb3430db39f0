"""ERP Integration Hub CLI management tool.

Usage:
    python -m cli crypto genkey
    python -m cli crypto encrypt "EAAG-page-token"
    python -m cli crypto decrypt "<nonce>:<ciphertext>"
    python -m cli webhook normalize whatsapp payload.json
    python -m cli webhook sign payload.json --secret s3cret
    python -m cli jobs sync-all
    python -m cli jobs sync 6f1c2a4e-...
    python -m cli jobs cleanup
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import uuid
from dataclasses import asdict
from pathlib import Path

from app.errors import IntegrationError
from app.models import Platform
from app.services.crypto import EncryptionService
from app.services.integration_log import PayloadEncoder
from app.services.integrations.base import sign_payload
from app.services.normalizers import normalize_courier, normalize_facebook, normalize_whatsapp
from app.services.webhooks import parse_webhook_platform


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="hub-cli",
        description="ERP Integration Hub CLI",
    )
    sub = parser.add_subparsers(dest="command", help="Top-level command")

    # ── Crypto ───────────────────────────────────────────
    crypto_parser = sub.add_parser("crypto", help="Credential encryption")
    crypto_sub = crypto_parser.add_subparsers(dest="action")

    crypto_sub.add_parser("genkey", help="Generate a 32-character ENCRYPTION_KEY")

    enc = crypto_sub.add_parser("encrypt", help="Encrypt a secret")
    enc.add_argument("text", help="Plain-text secret")
    enc.add_argument("--key", help="Encryption key (defaults to ENCRYPTION_KEY)")

    dec = crypto_sub.add_parser("decrypt", help="Decrypt a stored secret")
    dec.add_argument("token", help="Encrypted value")
    dec.add_argument("--key", help="Encryption key (defaults to ENCRYPTION_KEY)")

    # ── Webhook ──────────────────────────────────────────
    hook_parser = sub.add_parser("webhook", help="Webhook payload tools")
    hook_sub = hook_parser.add_subparsers(dest="action")

    norm = hook_sub.add_parser("normalize", help="Show how a payload is normalized")
    norm.add_argument("platform", help="facebook, whatsapp, aramex, dhl or domex")
    norm.add_argument("file", help="JSON payload file")

    sign = hook_sub.add_parser("sign", help="Compute the sha256= signature header")
    sign.add_argument("file", help="Payload file (signed byte for byte)")
    sign.add_argument("--secret", required=True, help="Webhook secret")

    # ── Jobs ─────────────────────────────────────────────
    jobs_parser = sub.add_parser("jobs", help="Run background jobs once")
    jobs_sub = jobs_parser.add_subparsers(dest="action")

    jobs_sub.add_parser("sync-all", help="Sync every active integration")
    one = jobs_sub.add_parser("sync", help="Sync one integration")
    one.add_argument("integration_id", help="Integration account UUID")
    jobs_sub.add_parser("cleanup", help="Delete old integration logs")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return

    handlers = {
        "crypto": handle_crypto,
        "webhook": handle_webhook,
        "jobs": handle_jobs,
    }
    handler = handlers.get(args.command)
    if handler:
        handler(args)
    else:
        parser.print_help()


# ── Command Handlers ────────────────────────────────────

def handle_crypto(args):
    try:
        if args.action == "genkey":
            print(EncryptionService.generate_key())
        elif args.action == "encrypt":
            print(EncryptionService.encrypt(args.text, args.key))
        elif args.action == "decrypt":
            print(EncryptionService.decrypt(args.token, args.key))
        else:
            print("Usage: hub-cli crypto {genkey|encrypt|decrypt}")
    except IntegrationError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)


def _read(path_str: str) -> bytes:
    path = Path(path_str)
    if not path.exists():
        print(f"File not found: {path_str}")
        sys.exit(1)
    return path.read_bytes()


def handle_webhook(args):
    if args.action == "normalize":
        try:
            platform = parse_webhook_platform(args.platform)
        except IntegrationError as e:
            print(f"Error: {e.message}", file=sys.stderr)
            sys.exit(1)
        payload = json.loads(_read(args.file))

        if platform == Platform.FACEBOOK_MARKETPLACE:
            result = {"messages": [asdict(m) for m in normalize_facebook(payload)]}
        elif platform == Platform.WHATSAPP_BUSINESS:
            normalized = normalize_whatsapp(payload)
            result = {
                "messages": [asdict(m) for m in normalized.messages],
                "statuses": [asdict(s) for s in normalized.statuses],
            }
        else:
            update = normalize_courier(platform, payload)
            result = {"shipment_update": asdict(update) if update else None}

        print(json.dumps(result, indent=2, ensure_ascii=False, cls=PayloadEncoder))

    elif args.action == "sign":
        print(f"sha256={sign_payload(args.secret, _read(args.file))}")

    else:
        print("Usage: hub-cli webhook {normalize|sign}")


def handle_jobs(args):
    from app.services.jobs import job_queue

    if args.action == "sync-all":
        results = asyncio.run(job_queue.sync_all_integrations())
        print(json.dumps(results, indent=2, cls=PayloadEncoder))

    elif args.action == "sync":
        try:
            account_id = uuid.UUID(args.integration_id)
        except ValueError:
            print(f"Invalid integration id: {args.integration_id}")
            sys.exit(1)
        ok = asyncio.run(job_queue.trigger_sync(account_id))
        print("✅ Sync completed" if ok else "❌ Sync failed")
        if not ok:
            sys.exit(1)

    elif args.action == "cleanup":
        deleted = asyncio.run(job_queue.cleanup_old_logs())
        print(f"Deleted {deleted} old integration logs")

    else:
        print("Usage: hub-cli jobs {sync-all|sync|cleanup}")


if __name__ == "__main__":
    main()
