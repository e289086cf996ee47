import argparse
import time
from typing import List

from parley.audit.channel import build_event_channel
from parley.config.settings import AppSettings
from parley.ledger.stores import build_stores

from .sweepers import MuteSweeper


def _build_sweeper(settings: AppSettings) -> MuteSweeper:
    stores = build_stores(settings)
    return MuteSweeper(stores.gating, build_event_channel(settings))


def sweep_once(org_ids: List[str]) -> int:
    sweeper = _build_sweeper(AppSettings.from_env())
    return sum(len(sweeper.sweep(org_id)) for org_id in org_ids)


def loop(org_ids: List[str], interval: float) -> None:
    sweeper = _build_sweeper(AppSettings.from_env())
    while True:
        for org_id in org_ids:
            sweeper.sweep(org_id)
        time.sleep(interval)


def main(argv: List[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Parley mute sweeper")
    sub = parser.add_subparsers(dest="command", required=True)

    sweep_parser = sub.add_parser("sweep")
    sweep_parser.add_argument("--org", action="append", required=True)

    loop_parser = sub.add_parser("loop")
    loop_parser.add_argument("--org", action="append", required=True)
    loop_parser.add_argument("--interval", type=float, default=None)

    args = parser.parse_args(argv)

    if args.command == "sweep":
        sweep_once(args.org)
    elif args.command == "loop":
        interval = args.interval
        if interval is None:
            interval = AppSettings.from_env().sweep_interval_seconds
        loop(args.org, interval)


if __name__ == "__main__":
    main()
