import argparse
import asyncio
import json
import sys
from typing import Any, Optional

from .config import load_config
from .logging import configure_logging
from .service import AbiNinjaService


def _add_network_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--network",
        required=False,
        default="1",
        help="Chain id or network name (e.g. 1, mainnet, arbitrum). Defaults to 1.",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Resolve contract ABIs on any EVM network and manage custom networks.",
        allow_abbrev=False,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    resolve_parser = subparsers.add_parser("resolve", help="Resolve a contract ABI")
    resolve_parser.add_argument(
        "--address",
        required=True,
        help="Contract address (0x-prefixed).",
    )
    _add_network_argument(resolve_parser)

    provide_parser = subparsers.add_parser("provide-abi", help="Store an ABI supplied by hand")
    provide_parser.add_argument(
        "--address",
        required=True,
        help="Contract address (0x-prefixed).",
    )
    provide_parser.add_argument(
        "--abi-file",
        required=True,
        help="Path to a JSON file holding the ABI (or '-' for stdin).",
    )
    _add_network_argument(provide_parser)

    decompile_parser = subparsers.add_parser("decompile", help="Recover a best-effort ABI from bytecode")
    decompile_parser.add_argument(
        "--address",
        required=True,
        help="Contract address (0x-prefixed).",
    )
    _add_network_argument(decompile_parser)

    proxy_parser = subparsers.add_parser("detect-proxy", help="Detect a proxy's implementation address")
    proxy_parser.add_argument(
        "--address",
        required=True,
        help="Contract address (0x-prefixed).",
    )
    _add_network_argument(proxy_parser)

    list_parser = subparsers.add_parser("list-networks", help="List builtin and custom networks")
    list_parser.add_argument(
        "--mainnets-only",
        action="store_true",
        help="Hide testnets.",
    )

    add_parser = subparsers.add_parser("add-network", help="Register a custom network")
    add_parser.add_argument("--chain-id", required=True, type=int, help="Numeric chain id.")
    add_parser.add_argument("--name", required=True, help="Network name.")
    add_parser.add_argument(
        "--rpc-url",
        required=True,
        action="append",
        dest="rpc_urls",
        help="RPC endpoint; repeat for fallback endpoints (first is primary).",
    )
    add_parser.add_argument("--currency-symbol", required=True, help="Native currency symbol.")
    add_parser.add_argument("--currency-name", required=False, help="Native currency name (defaults to symbol).")
    add_parser.add_argument("--currency-decimals", required=False, type=int, default=18, help="Defaults to 18.")
    add_parser.add_argument("--testnet", action="store_true", help="Mark the network as a testnet.")

    remove_parser = subparsers.add_parser("remove-network", help="Remove a custom network and its cached ABIs")
    remove_parser.add_argument("--chain-id", required=True, type=int, help="Numeric chain id.")

    return parser


def _read_text(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    with open(path, encoding="utf-8") as handle:
        return handle.read()


async def _run(service: AbiNinjaService, args: argparse.Namespace) -> Any:
    if args.command == "resolve":
        return await service.resolve_abi(args.address, args.network)
    if args.command == "provide-abi":
        return await service.provide_abi(args.address, args.network, _read_text(args.abi_file))
    if args.command == "decompile":
        return await service.decompile_abi(args.address, args.network)
    if args.command == "detect-proxy":
        return await service.detect_proxy_target(args.address, args.network)
    if args.command == "list-networks":
        return await service.list_networks(include_testnets=not args.mainnets_only)
    if args.command == "add-network":
        return await service.add_custom_network(
            {
                "id": args.chain_id,
                "name": args.name,
                "native_currency": {
                    "name": args.currency_name or args.currency_symbol,
                    "symbol": args.currency_symbol,
                    "decimals": args.currency_decimals,
                },
                "rpc_urls": args.rpc_urls,
                "is_testnet": args.testnet,
            }
        )
    if args.command == "remove-network":
        return await service.remove_custom_network(args.chain_id)
    raise ValueError(f"Unknown command '{args.command}'.")


def main(argv: Optional[list[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config()
        configure_logging(config.log_level)
        service = AbiNinjaService(config)
        result = asyncio.run(_run(service, args))
        print(json.dumps(result, indent=2))
    except Exception as exc:  # pylint: disable=broad-except
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
