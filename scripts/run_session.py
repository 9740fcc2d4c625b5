import argparse
import asyncio
import logging

from form_suggest.browser import BrowserSession
from form_suggest.config import settings
from form_suggest.models import init_db


async def run_session(url: str, tab_id: str, duration_s: float) -> None:
    async with BrowserSession() as session:
        await session.open_tab(tab_id, url)
        binding = session.coordinator.get_binding(tab_id)
        ready = bool(binding and binding.ready)
        print(f"[session] tab={tab_id} url={url} suggestions_ready={ready}")
        if duration_s > 0:
            await asyncio.sleep(duration_s)
        else:
            # Keep the browser open until the last tab is closed by hand.
            while session.pages:
                await asyncio.sleep(1)


def main():
    parser = argparse.ArgumentParser(description="Open a page with form suggestions enabled.")
    parser.add_argument("--url", required=True, help="Page to open")
    parser.add_argument("--tab", default="tab-1", help="Tab identifier used for the binding")
    parser.add_argument(
        "--duration",
        type=float,
        default=0,
        help="Seconds to keep the session open. 0 waits until the tab is closed.",
    )
    args = parser.parse_args()

    logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s %(message)s")
    init_db()
    asyncio.run(run_session(args.url, args.tab, args.duration))
    print("[session] closed")


if __name__ == "__main__":
    main()
