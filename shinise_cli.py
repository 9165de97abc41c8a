import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

from shinise.client import DEFAULT_API_BASE, ApiError, ShiniseClient
from shinise.config import load_settings, save_settings


def _print_shops(data: dict, limit: int) -> None:
    shops = data.get("shops") or []
    origin = "cache" if data.get("cached") else "fresh"
    print(f"{len(shops)} shops ({origin})")
    for shop in shops[:limit]:
        analysis = shop.get("aiAnalysis") or {}
        print(f"{analysis.get('score', 0):>3}  {shop.get('name')}  {analysis.get('short_summary', '-')}")
        if analysis.get("reasoning"):
            print(f"     {analysis['reasoning']}")


def _print_result(result) -> None:
    badge = result.risk_level or (str(result.score) if result.score is not None else "-")
    print(f"{result.icon} {result.agent_name} [{badge}] {result.summary}")
    for detail in result.details:
        print(f"   - {detail}")


async def _search(args: argparse.Namespace) -> int:
    client = ShiniseClient(args.base_url)
    try:
        data = await client.search(
            station=args.station,
            lat=args.lat,
            lng=args.lng,
            genre=args.genre,
            mode=args.mode,
            force=args.force,
        )
    except ApiError as exc:
        print(f"Search failed: {exc}")
        return 1
    finally:
        await client.close()
    _print_shops(data, args.limit)
    return 0


async def _agents(args: argparse.Namespace) -> int:
    client = ShiniseClient(args.base_url)
    try:
        agents = await client.list_agents()
    except ApiError as exc:
        print(f"Failed to list agents: {exc}")
        return 1
    finally:
        await client.close()
    for agent in agents:
        print(f"{agent['icon']} {agent['id']:<10} {agent['name']}  ({agent['description']})")
    return 0


async def _run(args: argparse.Namespace) -> int:
    client = ShiniseClient(args.base_url)
    shop = {"id": args.shop_id, "name": args.shop_name, "address": args.address or ""}
    try:
        results = await client.run_agents(shop, args.agents, force=args.force)
    except ApiError as exc:
        print(f"Agent run failed: {exc}")
        return 1
    finally:
        await client.close()
    for result in results:
        _print_result(result)
    return 0


def run_config_init(args: argparse.Namespace) -> int:
    path = Path(args.path)
    if path.exists() and not args.overwrite:
        print(f"{path} already exists (use --overwrite).")
        return 1
    save_settings(load_settings(path if path.exists() else None), path)
    print(f"Wrote {path}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Shinise discovery CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    search = subparsers.add_parser("search", help="Find shops around a station or coordinates")
    search.add_argument("station", nargs="?", help="Station or area name")
    search.add_argument("--lat", type=float)
    search.add_argument("--lng", type=float)
    search.add_argument("--genre", help="Genre keyword, e.g. 居酒屋")
    search.add_argument("--mode", choices=["standard", "adventure"], default="standard")
    search.add_argument("--force", action="store_true", help="Bypass caches")
    search.add_argument("--limit", type=int, default=10, help="Shops to print")

    subparsers.add_parser("agents", help="List available agents")

    run = subparsers.add_parser("run", help="Run agents against one shop")
    run.add_argument("shop_name")
    run.add_argument("agents", nargs="+", help="Agent ids, e.g. smoking crowd")
    run.add_argument("--shop-id", help="Place id (enables server-side caching)")
    run.add_argument("--address", help="Shop address")
    run.add_argument("--force", action="store_true", help="Ignore cached results")

    config = subparsers.add_parser("config", help="Configuration")
    config_sub = config.add_subparsers(dest="config_cmd")
    init = config_sub.add_parser("init", help="Write config.json from current settings")
    init.add_argument("--path", default="config.json")
    init.add_argument("--overwrite", action="store_true")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "search":
        if not args.station and (args.lat is None or args.lng is None):
            parser.error("search needs a station or --lat/--lng")
        return asyncio.run(_search(args))
    if args.command == "agents":
        return asyncio.run(_agents(args))
    if args.command == "run":
        return asyncio.run(_run(args))
    if args.command == "config" and args.config_cmd == "init":
        return run_config_init(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
