"""
Wiretap: a structured record of what went through the gateway.

Two parts:
  1. WireLog: writes one JSONL entry per gateway event (join, relayed
     message/assistant, disconnect)
  2. live_tap(): reads the JSONL and renders a color-coded live view

Separate from the debug log. Ephemeral messages never appear here because
they never reach the gateway.
"""

import json
import time
import logging
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

# ANSI colors
C_RESET = "\033[0m"
C_BOLD = "\033[1m"
C_DIM = "\033[2m"
C_USER = "\033[96m"       # cyan
C_ASSISTANT = "\033[93m"  # yellow
C_SYSTEM = "\033[90m"     # gray
C_TIME = "\033[90m"
C_BORDER = "\033[90m"

EVENT_COLORS = {
    "message": C_USER,
    "assistant": C_ASSISTANT,
    "join": C_SYSTEM,
    "disconnect": C_SYSTEM,
}

EVENT_ICONS = {
    "message": "▶",
    "assistant": "◀",
    "join": "+",
    "disconnect": "x",
}

MAX_CONTENT = 2000


class WireLog:
    """
    JSONL tap of gateway traffic.

    Format:
        {"ts": "...", "event": "message", "conv": "...", "author": "...",
         "len": 12, "content": "..."}
    """

    def __init__(self, log_path: str):
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = None

    def _ensure_open(self):
        if self._file is None:
            self._file = open(self.log_path, "a", buffering=1)  # line-buffered

    def log(self, event: str, conversation_id: str = "", author: str = "", content: str = ""):
        """Write a wire log entry."""
        self._ensure_open()
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": event,
            "conv": conversation_id,
            "author": author,
            "len": len(content),
        }
        if len(content) <= MAX_CONTENT:
            entry["content"] = content
        else:
            cut = len(content) - MAX_CONTENT
            entry["content"] = content[:1000] + f"\n\n[... {cut} chars truncated ...]\n\n" + content[-1000:]

        self._file.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def close(self):
        if self._file:
            self._file.close()
            self._file = None


def _format_entry(entry: dict, raw: bool = False) -> str:
    """Format a single wire log entry for display."""
    if raw:
        return json.dumps(entry, ensure_ascii=False)

    ts = entry.get("ts", "")
    try:
        time_str = datetime.fromisoformat(ts).strftime("%H:%M:%S")
    except (ValueError, TypeError):
        time_str = ts[:8] if ts else "??:??:??"

    event = entry.get("event", "?")
    conv = entry.get("conv", "")
    author = entry.get("author", "")
    content = entry.get("content", "")

    color = EVENT_COLORS.get(event, C_RESET)
    icon = EVENT_ICONS.get(event, "?")

    lines = []
    header = f"  {C_TIME}{time_str}{C_RESET} {color}{C_BOLD}{icon} {event.upper()}{C_RESET}"
    if author:
        header += f"  {author}"
    header += f"  {C_DIM}({entry.get('len', 0)} chars){C_RESET}"
    if conv:
        header += f"  {C_DIM}conv:{conv}{C_RESET}"
    lines.append(header)

    if content:
        display = content if len(content) <= 500 else content[:500] + f"\n      {C_DIM}[... truncated]{C_RESET}"
        for cline in display.split("\n")[:15]:
            lines.append(f"      {cline}")

    lines.append(f"  {C_BORDER}{'─' * 60}{C_RESET}")
    return "\n".join(lines)


def _matches(entry: dict, conv_filter: str | None) -> bool:
    return not conv_filter or entry.get("conv") == conv_filter


def live_tap(
    log_path: str | None = None,
    follow: bool = True,
    last_n: int = 20,
    conv_filter: str | None = None,
    raw: bool = False,
):
    """
    Live tail of the wire log.

    Args:
        log_path: Path to wire.jsonl. If None, reads from config.
        follow: If True, keep watching for new entries (tail -f behavior).
        last_n: Show this many recent entries before following.
        conv_filter: Only show entries for this conversation id.
        raw: Output raw JSONL instead of formatted.
    """
    if log_path is None:
        from byomchat.config import get_config
        log_path = get_config()["wiretap"]["path"]

    wire_path = Path(log_path)
    if not wire_path.exists():
        print(f"  ✗  No wire log found at {wire_path}")
        print("     Enable wiretap in config.yaml and start the server: byomchat serve")
        return

    if not raw:
        print(f"  Tapping into {wire_path}")
        print(f"  {C_BORDER}{'═' * 60}{C_RESET}")

    with open(wire_path) as f:
        all_lines = f.readlines()

    for line in all_lines[max(0, len(all_lines) - last_n):]:
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if _matches(entry, conv_filter):
            print(_format_entry(entry, raw=raw))

    if not follow:
        return

    if not raw:
        print(f"\n  {C_DIM}[listening for new traffic... Ctrl+C to stop]{C_RESET}\n")

    try:
        with open(wire_path) as f:
            f.seek(0, 2)
            while True:
                line = f.readline()
                if not line:
                    time.sleep(0.1)
                    continue
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if _matches(entry, conv_filter):
                    print(_format_entry(entry, raw=raw))
    except KeyboardInterrupt:
        if not raw:
            print(f"\n  {C_DIM}[tap closed]{C_RESET}")
