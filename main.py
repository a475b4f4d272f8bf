#!/usr/bin/env python3
"""
Post Tracker Orchestrator

Entry point for the tracker's modes:
1. serve  - run the read API with the background poller
2. poll   - run a single fetch-merge-persist cycle and exit
3. status - print configuration and what is currently stored
"""

import argparse
import asyncio
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from config import config, get_logger
from errors import PersistenceError
from scheduler import create_scheduler
from server import run_server
from store import PostStore
from telemetry import init_telemetry, trace_span

# Module-specific logger
logger = get_logger("orchestrator")
init_telemetry("post-tracker-orchestrator")


class PostTrackerOrchestrator:
    """Runs the tracker's one-shot operations against the configured store."""

    def __init__(self, posts_file: Optional[str] = None) -> None:
        self.posts_file = Path(posts_file or config.POSTS_FILE)
        self.store = PostStore(self.posts_file)

    @trace_span("run_poll", tracer_name="orchestrator")
    async def run_poll(self) -> bool:
        """Run one poll cycle."""
        logger.info("📡 Running a single poll cycle")
        scheduler = create_scheduler(self.store)
        try:
            success = await scheduler.poll_once()
        except PersistenceError as e:
            logger.error(f"❌ Poll could not persist posts: {e}")
            return False
        if success:
            logger.info(f"✅ Poll completed at {scheduler.last_poll_at}")
        return success

    async def check_status(self) -> dict:
        """Collect configuration and store status."""
        logger.info("📊 Checking system status")
        status = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "config": config.get_config_summary(),
            "checks": {},
        }
        try:
            posts = await self.store.snapshot()
            newest = await self.store.latest()
            status["checks"]["store"] = {
                "status": "ok" if self.posts_file.exists() else "missing",
                "total_posts": len(posts),
                "latest": newest.to_dict() if newest else None,
            }
        except PersistenceError as e:
            status["checks"]["store"] = {"status": "error", "message": str(e)}
        status["overall_status"] = "healthy" if status["checks"]["store"]["status"] == "ok" else "issues_detected"
        return status

    def print_status(self, status: dict) -> None:
        """Print formatted status information."""
        print("\n📊 Post Tracker Status")
        print(f"⏰ {status['timestamp']}")
        print(f"🏥 Overall: {status['overall_status'].upper()}")

        summary = status["config"]
        print("\n⚙️ Configuration:")
        print(f"   🔗 Source: {summary['source_url']}")
        print(f"   🍪 Session cookie: {'yes' if summary['has_session_cookie'] else 'no'}")
        print(f"   ⏱️ Interval: {summary['poll_interval_seconds']}s, window {summary['history_window_hours']}h, "
              f"{summary['max_pages']} page(s) of {summary['page_limit']}")

        store = status["checks"]["store"]
        if store["status"] == "error":
            print(f"\n💾 Store: ERROR - {store['message']}")
            return
        print(f"\n💾 Store ({self.posts_file}): {store['status'].upper()}")
        print(f"   📰 Posts: {store['total_posts']}")
        if store["latest"]:
            print(f"   🆕 Latest: {store['latest']['timestamp']} {store['latest']['url']}")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Post Tracker")
    parser.add_argument("mode", choices=["serve", "poll", "status"], help="Operation mode")
    parser.add_argument("--posts-file", type=str, help="Override the posts document path")
    parser.add_argument("--host", type=str, help="Read API bind host (serve)")
    parser.add_argument("--port", type=int, help="Read API port (serve)")

    args = parser.parse_args()

    if args.posts_file:
        config.POSTS_FILE = args.posts_file

    orchestrator = PostTrackerOrchestrator(args.posts_file)

    try:
        if args.mode == "serve":
            run_server(args.host, args.port)

        elif args.mode == "poll":
            success = asyncio.run(orchestrator.run_poll())
            sys.exit(0 if success else 1)

        elif args.mode == "status":
            status = asyncio.run(orchestrator.check_status())
            orchestrator.print_status(status)

    except KeyboardInterrupt:
        logger.info("👋 Post tracker shutting down")


if __name__ == "__main__":
    main()
