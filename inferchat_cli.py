import argparse
import sys
from typing import List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"
GIB = 1024 * 1024 * 1024


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _error_text(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text
    if isinstance(data, dict) and data.get("detail"):
        field = data.get("field")
        return f"{data['detail']}" + (f" (field: {field})" if field else "")
    return resp.text


def run_ask(args: argparse.Namespace) -> int:
    payload = {"query": args.query, "model": args.model, "forceSource": args.source}
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, "/api/ai/ask"), json=payload, timeout=args.timeout)
        if resp.status_code >= 400:
            print(f"Ask failed: HTTP {resp.status_code}: {_error_text(resp)}")
            return 1
        data = resp.json()
    print(data.get("response", ""))
    source = data.get("source")
    if source:
        print(f"\n[{source} · {data.get('model')}]")
    return 0


def run_chats_list(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, "/api/chats"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to list chats: HTTP {resp.status_code}")
            return 1
        chats = resp.json().get("chats") or []
    if not chats:
        print("No chats yet.")
        return 0
    for chat in chats:
        count = len(chat.get("messages") or [])
        print(f"{chat.get('id')}  {chat.get('title')}  ({chat.get('mode')}, {count} messages)")
    return 0


def run_catalog_list(args: argparse.Namespace) -> int:
    params = {"force_refresh": "true" if args.refresh else "false"}
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, "/api/catalog"), params=params, timeout=60)
        if resp.status_code >= 400:
            print(f"Failed to fetch catalog: HTTP {resp.status_code}")
            return 1
        models = resp.json().get("models") or []
    for model in models:
        marker = "*" if model.get("isInstalled") else " "
        size_gib = (model.get("sizeBytes") or 0) / GIB
        print(f"{marker} {model.get('name'):<32} {size_gib:6.1f} GiB  {', '.join(model.get('tags') or [])}")
    return 0


def run_engine_init(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, "/api/engine/init"), timeout=120)
        if resp.status_code >= 400:
            print(f"Engine init failed: HTTP {resp.status_code}")
            return 1
        ready = bool(resp.json().get("ready"))
        status = client.get(_join_url(args.base_url, "/api/engine/status"), timeout=10).json()
    print(status.get("lastStatus") or ("ready" if ready else "not ready"))
    return 0 if ready else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="inferchat CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    ask = subparsers.add_parser("ask", help="Ask a single question")
    ask.add_argument("query", help="Question text")
    ask.add_argument("--model", default=None, help="Model to use")
    ask.add_argument("--source", choices=["local", "remote"], default=None, help="Force a backend")
    ask.add_argument("--timeout", type=float, default=300.0, help="Request timeout in seconds")

    chats = subparsers.add_parser("chats", help="Chat sessions")
    chats_sub = chats.add_subparsers(dest="chats_cmd")
    chats_sub.add_parser("list", help="List chats")

    catalog = subparsers.add_parser("catalog", help="Model catalog")
    catalog_sub = catalog.add_subparsers(dest="catalog_cmd")
    catalog_list = catalog_sub.add_parser("list", help="List installable models")
    catalog_list.add_argument("--refresh", action="store_true", help="Bypass the registry cache")

    engine = subparsers.add_parser("engine", help="Local engine")
    engine_sub = engine.add_subparsers(dest="engine_cmd")
    engine_sub.add_parser("init", help="Start the local engine if needed")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "ask":
        return run_ask(args)
    if args.command == "chats" and args.chats_cmd == "list":
        return run_chats_list(args)
    if args.command == "catalog" and args.catalog_cmd == "list":
        return run_catalog_list(args)
    if args.command == "engine" and args.engine_cmd == "init":
        return run_engine_init(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
