import argparse
import asyncio
import logging
import sys
import time

from overachiever import models  # noqa: F401
from overachiever.database import init_db
from overachiever.events import Done, Error, GameUpdated, ScrapingAchievements
from overachiever.logging_conf import configure_logging
from overachiever.services.sync_engine import SyncSession
from overachiever.services.sync_runner import FULL_SCAN, UPDATE, run_in_thread

configure_logging()
logger = logging.getLogger("run_sync")

FRAME_SECONDS = 1 / 30


def describe(event):
    if isinstance(event, ScrapingAchievements):
        return f"[{event.current}/{event.total}] {event.game_name}"
    if isinstance(event, GameUpdated):
        return f"    {event.appid}: {event.unlocked}/{event.total}"
    if isinstance(event, Done):
        s = event.summary
        return (
            f"Done: {s.games_updated} games updated, {s.achievements_updated} achievements, "
            f"{s.new_games} new games"
        )
    if isinstance(event, Error):
        return f"Error: {event.message}"
    return event.state


def main():
    parser = argparse.ArgumentParser(description="Sync a Steam library from the command line")
    parser.add_argument("--steam-id", help="Defaults to STEAM_ID from the environment")
    parser.add_argument("--full-scan", action="store_true", help="Scrape never-scraped games")
    parser.add_argument("--force", action="store_true", help="With --full-scan: rescan every game")
    args = parser.parse_args()

    asyncio.run(init_db())

    session = SyncSession.from_settings(args.steam_id)
    flow = FULL_SCAN if args.full_scan else UPDATE
    thread, observer, cancel_event = run_in_thread(session, flow=flow, force=args.force)

    failed = False
    try:
        # Poll like a render loop would: never block on the worker
        while True:
            alive = thread.is_alive()
            for event in observer.poll():
                print(describe(event))
                failed = failed or isinstance(event, Error)
            if not alive:
                break
            time.sleep(FRAME_SECONDS)
    except KeyboardInterrupt:
        print("Cancelling after the current game...")
        cancel_event.set()
        thread.join()
        for event in observer.poll():
            print(describe(event))
        failed = True

    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
