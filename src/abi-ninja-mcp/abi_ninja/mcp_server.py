"""
MCP server exposing ABI resolution and the chain registry.
"""

import argparse
from typing import Optional, Union

from mcp.server.fastmcp import FastMCP

from .config import load_config
from .logging import configure_logging
from .service import AbiNinjaService

server = FastMCP(
    name="abi-ninja-mcp",
    instructions=(
        "Resolve contract ABIs on any EVM network (proxy-aware, cached) and manage custom networks. "
        "When resolve_abi reports awaiting_manual, offer provide_abi or decompile_abi."
    ),
)

_service: Optional[AbiNinjaService] = None


def _get_service() -> AbiNinjaService:
    global _service
    if _service is None:
        cfg = load_config()
        configure_logging(cfg.log_level)
        _service = AbiNinjaService(cfg)
    return _service


@server.tool(
    name="resolve_abi",
    title="Resolve Contract ABI",
    description=(
        "Resolve a contract ABI from cache, ABI directory or block explorer. Proxies are followed "
        "to their implementation. `network` is a chain id or a network name. Calls sharing a "
        "`context` supersede each other: an older pending call reports `superseded`."
    ),
)
async def resolve_abi(address: str, network: Union[int, str] = 1, context: Optional[str] = None) -> dict:
    svc = _get_service()
    return await svc.resolve_abi(address, network, context=context)


@server.tool(
    name="provide_abi",
    title="Provide ABI Manually",
    description="Store a user-supplied ABI (JSON text) for an address, replacing any cached ABI.",
)
async def provide_abi(address: str, abi: str, network: Union[int, str] = 1) -> dict:
    svc = _get_service()
    return await svc.provide_abi(address, network, abi)


@server.tool(
    name="decompile_abi",
    title="Decompile ABI (experimental)",
    description="Recover a best-effort ABI from bytecode via the decompiler service. May be partial.",
)
async def decompile_abi(address: str, network: Union[int, str] = 1) -> dict:
    svc = _get_service()
    return await svc.decompile_abi(address, network)


@server.tool(
    name="clear_abi",
    title="Clear Cached ABI",
    description="Remove the cached ABI for an address on a network.",
)
async def clear_abi(address: str, network: Union[int, str] = 1) -> dict:
    svc = _get_service()
    return await svc.clear_abi(address, network)


@server.tool(
    name="list_networks",
    title="List Networks",
    description="List builtin networks followed by user-added custom networks.",
)
async def list_networks(include_testnets: bool = True) -> list:
    svc = _get_service()
    return await svc.list_networks(include_testnets)


@server.tool(
    name="add_custom_network",
    title="Add Custom Network",
    description=(
        "Register a network by chain id. Fails if the id is already known. "
        "rpc_urls is an ordered list; the first URL is the primary endpoint."
    ),
)
async def add_custom_network(
    chain_id: int,
    name: str,
    rpc_urls: list,
    currency_symbol: str,
    currency_name: Optional[str] = None,
    currency_decimals: int = 18,
    is_testnet: bool = False,
) -> dict:
    svc = _get_service()
    return await svc.add_custom_network(
        {
            "id": chain_id,
            "name": name,
            "native_currency": {
                "name": currency_name or currency_symbol,
                "symbol": currency_symbol,
                "decimals": currency_decimals,
            },
            "rpc_urls": rpc_urls,
            "is_testnet": is_testnet,
        }
    )


@server.tool(
    name="remove_custom_network",
    title="Remove Custom Network",
    description="Remove a custom network and every cached ABI for its chain id. Builtin networks cannot be removed.",
)
async def remove_custom_network(chain_id: int) -> dict:
    svc = _get_service()
    return await svc.remove_custom_network(chain_id)


@server.tool(
    name="detect_proxy_target",
    title="Detect Proxy Implementation",
    description="Detect EIP-1967, EIP-1167 and legacy OpenZeppelin proxies and return the implementation address.",
)
async def detect_proxy_target(address: str, network: Union[int, str] = 1) -> dict:
    svc = _get_service()
    return await svc.detect_proxy_target(address, network)


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the ABI Ninja MCP server.")
    parser.add_argument(
        "--transport",
        choices=["stdio", "sse", "streamable-http"],
        default="stdio",
        help="Transport protocol for MCP.",
    )
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host for SSE/HTTP transports.",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port for SSE/HTTP transports.",
    )
    parser.add_argument(
        "--mount-path",
        default="/",
        help="Mount path for SSE transport (only when transport=sse).",
    )
    args = parser.parse_args()

    # FastMCP uses host/port only for SSE/HTTP transports; stdio ignores them.
    server.settings.host = args.host
    server.settings.port = args.port

    if args.transport == "sse":
        server.run(transport="sse", mount_path=args.mount_path)
    else:
        server.run(transport=args.transport)


if __name__ == "__main__":
    main()
