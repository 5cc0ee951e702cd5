import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

import httpx

from missionagent.config import AppSettings, load_settings
from missionagent.db import Database
from missionagent.decision_engine import DecisionEngine
from missionagent.mission_store import MissionStore
from missionagent.orchestrator import MissionOrchestrator
from missionagent.providers import ProviderGateway


logger = logging.getLogger("missionagent")


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _print_mission(mission: dict) -> None:
    print(f"Mission {mission.get('id')} [{mission.get('status')}]")
    print(f"  Goal: {mission.get('goal')}")
    if mission.get("result"):
        print(f"  Result: {mission['result']}")
    for task in mission.get("tasks") or []:
        retries = task.get("retries") or 0
        suffix = f" (retries={retries})" if retries else ""
        print(f"  - {task.get('id')} [{task.get('status')}]{suffix}: {task.get('description')}")


async def _run_engine(settings: AppSettings, once: bool, interval_s: float) -> None:
    db = Database(settings.database_path)
    await db.init()
    store = MissionStore(db)
    gateway = ProviderGateway.from_settings(settings)
    orchestrator = MissionOrchestrator(
        store,
        gateway,
        decision_engine=DecisionEngine.from_settings(settings, gateway.gemini),
    )
    logger.info(
        "Providers available: %s; LLM decisions: %s",
        ", ".join(gateway.available_providers()) or "none",
        "on" if settings.llm_enabled else "off",
    )
    try:
        if once:
            await orchestrator.run_once()
            return
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                # Windows event loops have no signal handlers; Ctrl+C still raises KeyboardInterrupt.
                pass
        await orchestrator.run_forever(stop_event, interval_s=interval_s)
    finally:
        await gateway.close()


def run_engine(args: argparse.Namespace) -> int:
    settings = load_settings(Path(args.config) if args.config else None)
    interval = args.interval if args.interval is not None else settings.poll_interval_s
    try:
        asyncio.run(_run_engine(settings, once=args.once, interval_s=interval))
    except KeyboardInterrupt:
        pass
    return 0


def run_missions_create(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, "/api/missions"), json={"goal": args.goal}, timeout=120)
        if resp.status_code >= 400:
            print(f"Failed to create mission: HTTP {resp.status_code} {resp.text}")
            return 1
        _print_mission(resp.json().get("mission") or {})
    return 0


def run_missions_status(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, f"/api/missions/{args.mission_id}"), timeout=10)
        if resp.status_code == 404:
            print(f"Mission {args.mission_id} not found.")
            return 1
        if resp.status_code >= 400:
            print(f"Failed to fetch mission: HTTP {resp.status_code}")
            return 1
        mission = resp.json().get("mission") or {}
        if args.json:
            print(json.dumps(mission, indent=2))
        else:
            _print_mission(mission)
    return 0


def run_missions_list(args: argparse.Namespace) -> int:
    params = {"status": args.status} if args.status else {}
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, "/api/missions"), params=params, timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to list missions: HTTP {resp.status_code}")
            return 1
        missions = resp.json().get("missions") or []
    if not missions:
        print("No missions.")
        return 0
    for mission in missions:
        print(f"{mission.get('id')}  {mission.get('status'):<12} {mission.get('goal')}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mission agent CLI")
    parser.add_argument("--base-url", default=None, help="API base URL (defaults to api_base_url setting)")
    parser.add_argument("--config", default=None, help="Path to config.json")
    subparsers = parser.add_subparsers(dest="command")

    engine = subparsers.add_parser("engine", help="Run the mission engine polling loop")
    engine.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    engine.add_argument("--interval", type=float, default=None, help="Seconds between cycles")

    missions = subparsers.add_parser("missions", help="Mission management via the HTTP API")
    missions_sub = missions.add_subparsers(dest="missions_cmd")

    create = missions_sub.add_parser("create", help="Create and decompose a mission")
    create.add_argument("goal", help="Mission goal")

    status = missions_sub.add_parser("status", help="Show a mission and its tasks")
    status.add_argument("mission_id")
    status.add_argument("--json", action="store_true", help="Print raw JSON")

    listing = missions_sub.add_parser("list", help="List missions")
    listing.add_argument("--status", default=None, help="Filter by mission status")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = load_settings(Path(args.config) if args.config else None)
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args.base_url = args.base_url or settings.api_base_url
    if args.command == "engine":
        return run_engine(args)
    if args.command == "missions" and args.missions_cmd == "create":
        return run_missions_create(args)
    if args.command == "missions" and args.missions_cmd == "status":
        return run_missions_status(args)
    if args.command == "missions" and args.missions_cmd == "list":
        return run_missions_list(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
