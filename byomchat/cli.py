#!/usr/bin/env python3
"""
byomchat CLI.

Every command has a short name and standard aliases:

    COMMAND   ALIASES          WHAT IT DOES
    -------   -------          ----------------------------------
    serve     dial, start      Start the chat server
    ring      ping, health     Ping a running instance
    tap       log, tail        Watch gateway traffic (needs wiretap enabled)
"""

import argparse

from byomchat import __version__


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_serve(args):
    """Start the byomchat server."""
    import uvicorn
    from byomchat.config import get_config

    cfg = get_config()
    host = args.host or cfg["server"]["host"]
    port = args.port or cfg["server"]["port"]

    print(f"  byomchat {__version__}")
    print(f"  Listening on {host}:{port}")
    print(f"  Proxying /api -> {cfg['proxy']['target']}")
    print()

    uvicorn.run(
        "byomchat.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


def cmd_ring(args) -> int:
    """Ping a running byomchat instance."""
    import httpx

    url = (args.url or "http://localhost:3000").rstrip("/")
    try:
        resp = httpx.get(f"{url}/healthz", timeout=5)
    except httpx.ConnectError:
        print(f"  ✗  Nothing listening at {url}")
        return 1
    except httpx.HTTPError as e:
        print(f"  ✗  Error: {e}")
        return 1

    if resp.status_code != 200:
        print(f"  ✗  No answer — got HTTP {resp.status_code}")
        return 1

    data = resp.json()
    print(f"  ✓  {url} is UP (uptime {data.get('uptime', 0):.0f}s)")
    print(f"  💬 Conversations: {data.get('conversations', 0)} ({data.get('messages', 0)} messages)")
    print(f"  🔌 Connections: {data.get('connections', 0)} in {data.get('rooms', 0)} room(s)")
    return 0


def cmd_tap(args):
    """Watch gateway traffic on the wire log."""
    from byomchat.wiretap import live_tap
    live_tap(
        log_path=args.log,
        follow=not args.no_follow,
        last_n=args.last,
        conv_filter=args.conv,
        raw=args.raw,
    )


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under multiple names."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="byomchat",
        description="byomchat — shared chat with your own AI model.",
        epilog="Run 'byomchat <command> --help' for command-specific options.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"byomchat {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_serve(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["serve", "dial", "start"], "Start the chat server", cmd_serve, setup_serve)

    def setup_ring(p):
        p.add_argument("--url", "-u", default=None, help="Server URL (default: http://localhost:3000)")

    _add_command(sub, ["ring", "ping", "health"], "Ping a running instance", cmd_ring, setup_ring)

    def setup_tap(p):
        p.add_argument("--log", default=None, help="Path to wire.jsonl (default: from config)")
        p.add_argument("--last", "-n", type=int, default=20, help="Show last N entries before following")
        p.add_argument("--conv", "-c", default=None, help="Only show this conversation")
        p.add_argument("--no-follow", action="store_true", help="Don't follow, just show last entries")
        p.add_argument("--raw", action="store_true", help="Raw JSONL output, no formatting")

    _add_command(sub, ["tap", "log", "tail"], "Watch gateway traffic", cmd_tap, setup_tap)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    return args.func(args) or 0


if __name__ == "__main__":
    raise SystemExit(main())
