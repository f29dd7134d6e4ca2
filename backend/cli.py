#!/usr/bin/env python3
"""
Interactive CLI for inspecting the timeline feed and the archive.

Usage:
    python cli.py [config.json]

Commands:
    timeline   - Fetch posts newer than a watermark (nothing is stored)
    sync       - Run one full sync (may send yesterday's digest)
    partition  - Show a stored day's partition
    partitions - List stored partitions
    ratelimit  - Show X API rate limit status
    status     - Show configuration and adapter status
"""

import cmd
import json
import sys
from datetime import date, datetime, timezone

from adapter.errors import HarvestError
from adapter.models import Item, watermark
from adapter.x import XAdapterError, XAPIError, XAuthenticationError, XRateLimitError
from archive import Found, partition_days, partition_key
from main import build_engine
from monitoring import SystemMonitor
from settings import Settings


def _print_verbose_error(e: HarvestError):
    """Print verbose error information."""
    print("\n" + "=" * 60)
    print("✗ ERROR DETAILS")
    print("=" * 60)
    print(f"  Type: {type(e).__name__}")
    print(f"  Message: {e}")

    if isinstance(e, XAuthenticationError):
        print("\n  💡 Troubleshooting:")
        print("     - Check X_ACCESS_TOKEN is set to a user-context token")
        print("     - Verify the token has tweet.read and users.read scopes")

    elif isinstance(e, XRateLimitError):
        if e.reset_time:
            reset_dt = datetime.fromtimestamp(e.reset_time, tz=timezone.utc)
            wait_seconds = max(0, (reset_dt - datetime.now(timezone.utc)).total_seconds())
            print(f"  Reset Time: {reset_dt.strftime('%H:%M:%S UTC')} (in {int(wait_seconds)}s)")
        if e.limit:
            print(f"  Limit: {e.limit} requests per window")
        if e.remaining is not None:
            print(f"  Remaining: {e.remaining}")

    elif isinstance(e, XAPIError):
        if e.status_code:
            print(f"  Status Code: {e.status_code}")
        if e.response_text:
            print(f"  Response: {e.response_text[:500]}")
        if e.status_code == 403:
            print("\n  💡 Your API access level may not include the home timeline endpoint")

    print("=" * 60 + "\n")


class DigestCLI(cmd.Cmd):
    """Interactive CLI for the harvester."""

    intro = """
╔═══════════════════════════════════════════════════════════════╗
║                     X Digest CLI                              ║
║  Commands: timeline, sync, partition, partitions, ratelimit,  ║
║            status, help, quit                                 ║
╚═══════════════════════════════════════════════════════════════╝
"""
    prompt = "digest> "

    def __init__(self, settings: Settings, stdout=None):
        super().__init__(stdout=stdout)
        self.settings = settings
        self.engine, self.adapter, self.store = build_engine(settings, SystemMonitor())
        if self.adapter.is_configured:
            self._out("✓ XAdapter initialized with access token")
        else:
            self._out("⚠ XAdapter initialized WITHOUT access token - API calls will fail")

    def _out(self, line: str = ""):
        self.stdout.write(line + "\n")

    def _print_item(self, item: Item, index: int = None):
        """Pretty print an item."""
        prefix = f"[{index}] " if index is not None else ""
        stamp = item.created_at.strftime("%H:%M:%S") if item.created_at else "--:--:--"

        text = item.text.replace("\n", " ")[:100]
        if len(item.text) > 100:
            text += "..."

        self._out(f"{prefix}[{stamp}] @{item.author}")
        self._out(f"   {text}")
        self._out(f"   {item.permalink}")
        self._out()

    def do_status(self, arg):
        """Show configuration and adapter status."""
        today, _ = partition_days(datetime.now(timezone.utc), self.settings.tzinfo)
        self._out("\n=== X Digest Status ===")
        self._out(f"X adapter configured: {'Yes' if self.adapter.is_configured else 'No'}")
        self._out(f"Archive: {self.store.db_path}")
        self._out(f"Timezone: {self.settings.timezone}")
        self._out(f"Today's partition: {partition_key(today)}")
        self._out(f"Digest recipient: {self.settings.digest_recipient or '(not set)'}")

    def do_ratelimit(self, arg):
        """
        Show current rate limit status from X API.

        Note: Values are from the last API response.
        """
        status = self.adapter.get_rate_limit_status()
        self._out("\n=== X API Rate Limit Status ===")
        if status["limit"] is None:
            self._out("  ⚠ No rate limit data yet - make an API call first")
            return

        self._out(f"  Remaining: {status['remaining']}/{status['limit']}")
        if status["reset_time_str"]:
            self._out(f"  Resets at: {status['reset_time_str']} (in {status['seconds_until_reset']}s)")

    def do_timeline(self, arg):
        """
        Fetch home timeline posts newer than a watermark. Nothing is stored.

        Usage: timeline [since_id] [--json]
        """
        parts = arg.split()
        as_json = "--json" in parts
        parts = [p for p in parts if p != "--json"]
        try:
            since_id = int(parts[0]) if parts else 0
        except ValueError:
            self._out("Usage: timeline [since_id] [--json]")
            return

        try:
            items = self.adapter.fetch_since(since_id)
        except XAdapterError as e:
            _print_verbose_error(e)
            return

        if as_json:
            self._out(json.dumps([item.model_dump(mode="json") for item in items], indent=2))
            return

        if not items:
            self._out("No new posts.")
            return
        self._out(f"Found {len(items)} posts:\n")
        for i, item in enumerate(items, 1):
            self._print_item(item, i)

    def do_sync(self, arg):
        """Run one full sync now."""
        try:
            result = self.engine.run()
        except HarvestError as e:
            _print_verbose_error(e)
            return

        self._out(f"✓ {result.outcome.value}: {result.new_items} new, {result.total_items} in {result.partition}")
        if result.rolled_over:
            self._out(f"  Rolled over (digest of {result.digest_items} items)")

    def do_partition(self, arg):
        """
        Show a stored partition.

        Usage: partition [YYYY-MM-DD]   (defaults to today)
        """
        try:
            day = date.fromisoformat(arg.strip()) if arg.strip() else \
                partition_days(datetime.now(timezone.utc), self.settings.tzinfo)[0]
        except ValueError:
            self._out("Usage: partition [YYYY-MM-DD]")
            return

        key = partition_key(day)
        try:
            read = self.store.get(key)
        except HarvestError as e:
            _print_verbose_error(e)
            return

        if not isinstance(read, Found):
            self._out(f"{key} not found.")
            return

        self._out(f"{key}: {len(read.items)} items, watermark {watermark(read.items)}\n")
        for i, item in enumerate(read.items, 1):
            self._print_item(item, i)

    def do_partitions(self, arg):
        """List stored partitions."""
        try:
            keys = self.store.list_keys()
        except HarvestError as e:
            _print_verbose_error(e)
            return

        for key in keys:
            self._out(key)

    def do_quit(self, arg):
        """Exit the CLI."""
        self._out("Goodbye!")
        return True

    def do_exit(self, arg):
        """Exit the CLI."""
        return self.do_quit(arg)

    def do_EOF(self, arg):
        """Handle Ctrl+D."""
        self._out()
        return self.do_quit(arg)

    def emptyline(self):
        """Do nothing on empty line."""
        pass


def main():
    """Run the CLI."""
    config = sys.argv[1] if len(sys.argv) > 1 else "config.json"
    cli = DigestCLI(Settings.load(config))
    try:
        cli.cmdloop()
    except KeyboardInterrupt:
        print("\nGoodbye!")


if __name__ == "__main__":
    main()
