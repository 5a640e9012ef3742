"""
BlackCat — command-line entry point for access-layer collectors.

Usage:
    python -m blackcat vaults --subscription-id <GUID> --tenant-id ... --client-id ... --cert-path ./base64.txt
    python -m blackcat principals <id|upn|appId|name> [...] --delegated --tenant-id ...
    python -m blackcat vaults --subscription-id <GUID> --config config.json --throttle 20 --deadline 300

Output formats: table (default), json, csv.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

from . import __version__
from .auth.identity import identity_from_config
from .collectors import KeyVaultCollector, PrincipalCollector
from .config import AccessConfig, CertificateAuth, DelegatedAuth
from .errors import AuthError, InteractionRequiredError
from .layer import AccessLayer
from .reporting import export_csv, export_json


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="blackcat",
        description="BlackCat cloud resource access layer",
    )
    subparsers = parser.add_subparsers(dest="command", help="Collectors")

    vaults_p = subparsers.add_parser("vaults", help="List Key Vaults and their secret metadata")
    vaults_p.add_argument("--subscription-id", required=True, help="Azure subscription ID (GUID)")

    principals_p = subparsers.add_parser("principals", help="Resolve directory principals")
    principals_p.add_argument("identifiers", nargs="+", help="Object ids, UPNs, appIds or display names")

    # --- Auth options ---
    parser.add_argument("--config", "-c", type=Path, help="Path to JSON configuration file")
    parser.add_argument(
        "--delegated",
        action="store_true",
        help="Use delegated (device-code) authentication instead of certificate",
    )
    parser.add_argument(
        "--no-interactive",
        action="store_true",
        help="Fail instead of starting a device-code sign-in",
    )
    parser.add_argument("--tenant-id", type=str, default=None, help="Tenant ID")
    parser.add_argument("--client-id", type=str, default=None, help="App registration client ID")
    parser.add_argument("--cert-path", type=Path, help="Path to base64-encoded PFX certificate")

    # --- Execution options ---
    parser.add_argument("--throttle", "-t", type=int, default=None, help="Max concurrent workers")
    parser.add_argument("--deadline", type=float, default=None, help="Stop scheduling new work after N seconds")
    parser.add_argument("--no-cache", action="store_true", help="Disable the in-process cache")
    parser.add_argument("--cache-stats", action="store_true", help="Print cache statistics at the end")

    # --- Output options ---
    parser.add_argument(
        "--format", "-f",
        choices=["table", "json", "csv"],
        default="table",
        help="Output format (default: table)",
    )
    parser.add_argument(
        "--output-dir", "-o",
        type=Path,
        default=Path("./blackcat_output"),
        help="Output directory for json/csv (default: ./blackcat_output)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> AccessConfig:
    """Build configuration from a config file and CLI overrides."""
    if args.config and args.config.exists():
        config = AccessConfig.from_file(str(args.config))
    else:
        config = AccessConfig()

    if args.delegated:
        config.auth.mode = "delegated"

    if config.auth.mode == "delegated":
        tenant_id = args.tenant_id or (config.auth.delegated.tenant_id if config.auth.delegated else None)
        if not tenant_id:
            print("\n❌ --tenant-id is required for delegated authentication.")
            sys.exit(1)
        delegated = config.auth.delegated or DelegatedAuth(tenant_id=tenant_id)
        delegated.tenant_id = tenant_id
        if args.client_id:
            delegated.client_id = args.client_id
        if args.no_interactive:
            delegated.interactive = False
        config.auth.delegated = delegated
    elif args.tenant_id and args.client_id:
        config.auth.certificate = CertificateAuth(
            tenant_id=args.tenant_id,
            client_id=args.client_id,
            certificate_path=str(args.cert_path) if args.cert_path else "./base64.txt",
        )
    elif not config.auth.certificate:
        print("\n❌ No credentials configured. Use one of:")
        print("   • --tenant-id X --client-id Y --cert-path Z  (certificate)")
        print("   • --delegated --tenant-id X                  (device code)")
        print("   • --config config.json                       (JSON config file)")
        sys.exit(1)
    elif args.cert_path:
        config.auth.certificate.certificate_path = str(args.cert_path)

    if args.throttle is not None:
        config.throttle = args.throttle
    if args.no_cache:
        config.cache.enabled = False
    if args.verbose:
        config.verbose = True
    return config


def build_collector(args: argparse.Namespace, layer: AccessLayer):
    if args.command == "vaults":
        return KeyVaultCollector(
            layer, args.subscription_id, throttle=args.throttle, deadline=args.deadline
        )
    return PrincipalCollector(
        layer, args.identifiers, throttle=args.throttle, deadline=args.deadline
    )


def print_table(result) -> None:
    aggregate = result.aggregate
    print(f"\n  {result.collector_name}: {len(aggregate.successes)} succeeded "
          f"in {aggregate.total_duration:.1f}s")
    for cls, count in sorted(aggregate.counts_by_class.items(), key=lambda kv: kv[0].value):
        print(f"    {cls.value:<22s} {count}")

    for item in aggregate.successes:
        if isinstance(item, dict) and "vault" in item:
            print(f"  🔑 {item['vault']:<30s} {item['secret_count']} secrets")
        elif isinstance(item, dict):
            label = item.get("userPrincipalName") or item.get("displayName") or item.get("id")
            print(f"  👤 {label:<40s} {item.get('type') or '':<20s} {item.get('id')}")
        else:
            print(f"  • {item}")

    for failure in aggregate.failures:
        print(f"  ❌ {failure.target}: {failure.failure_class.value} {failure.message}")


async def main_async(argv=None) -> int:
    """Async entry point."""
    args = parse_args(argv)
    if not args.command:
        print("Usage: python -m blackcat {vaults|principals} ...")
        return 0

    config = build_config(args)
    logging.basicConfig(
        level=logging.DEBUG if config.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    run_id = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S") + "_" + uuid.uuid4().hex[:8]
    print("=" * 70)
    print(f" BlackCat v{__version__} — {args.command}")
    print("=" * 70)

    try:
        identity = identity_from_config(config.auth)
        async with await AccessLayer.open(identity, config) as layer:
            result = await build_collector(args, layer).execute()
            cache_stats = layer.cache.stats() if layer.cache is not None else {}
    except InteractionRequiredError as e:
        print(f"\n❌ {e}\n   {e.hint}")
        return 2
    except AuthError as e:
        print(f"\n❌ Authentication failed: {e}")
        return 2

    if args.format == "json":
        path = export_json(result, args.output_dir, run_id, cache_stats if args.cache_stats else None)
        print(f"  📄 JSON: {path}")
    elif args.format == "csv":
        for path in export_csv(result, args.output_dir, run_id):
            print(f"  📊 CSV:  {path}")
    else:
        print_table(result)

    if args.cache_stats:
        print("\n  Cache:")
        for segment, stats in cache_stats.items():
            print(f"    {segment:<12s} {stats['entries']}/{stats['max_entries']} entries, "
                  f"{stats['hits']} hits, {stats['misses']} misses, {stats['evictions']} evictions")

    return 0 if not result.aggregate.failures else 1


def main():
    """Synchronous entry point for `python -m blackcat`."""
    sys.exit(asyncio.run(main_async()))


if __name__ == "__main__":
    main()
