import argparse
import asyncio
import json
import logging
import signal
import sys

import config
from automation_graph import load_automation_file, migrate_automations_document
from gateway import SweepGateway
from runtime import Runtime, build_runtime

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
config.LOG_DIR.mkdir(parents=True, exist_ok=True)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(config.LOG_DIR / "portal.log"),
    ],
)
log = logging.getLogger("portal")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------
async def serve(runtime: Runtime):
    """Run the HTTP API and the gateway tick until SIGINT/SIGTERM."""
    import uvicorn

    from web import create_app

    gateway = SweepGateway(runtime)
    app = create_app(runtime, gateway)
    server = uvicorn.Server(
        uvicorn.Config(app, host=config.WEB_HOST, port=config.WEB_PORT, log_level="warning")
    )
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    tasks = [asyncio.create_task(server.serve(), name="web")]
    if config.GATEWAY_ENABLED:
        tasks.append(asyncio.create_task(gateway.run_forever(stop), name="gateway"))
    log.info("Serving on http://%s:%d (gateway=%s)", config.WEB_HOST, config.WEB_PORT, config.GATEWAY_ENABLED)

    await stop.wait()
    log.info("Shutdown signal received...")
    server.should_exit = True
    await asyncio.gather(*tasks, return_exceptions=True)


async def sweep(runtime: Runtime, job_id: str, payload: dict) -> dict:
    gateway = SweepGateway(runtime)
    return await gateway.run_job(job_id, payload)


async def import_automations(runtime: Runtime, owner_id: str, path: str, *, replace: bool = False) -> int:
    """Merge automations from a YAML/JSON file into the tenant document by id."""
    incoming = load_automation_file(path)
    slug = config.AUTOMATIONS_SERVICE_SLUG
    async with runtime.documents.lock(owner_id, slug):
        data = migrate_automations_document(await runtime.documents.load(owner_id, slug))
        current = [] if replace else list(data.get("automations") or [])
        by_id = {str(item.get("id")): index for index, item in enumerate(current) if isinstance(item, dict)}
        for automation in incoming:
            index = by_id.get(str(automation.get("id")))
            if index is None:
                by_id[str(automation.get("id"))] = len(current)
                current.append(automation)
            else:
                current[index] = automation
        data["automations"] = current
        await runtime.documents.save(owner_id, slug, data)
    log.info("Imported %d automation(s) for owner %s from %s", len(incoming), owner_id, path)
    return len(incoming)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Portal automations runtime")
    parser.add_argument("--db", default=None, help="sqlite database path")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="run the HTTP API and the sweep gateway")

    sweep_parser = sub.add_parser("sweep", help="run one sweep now")
    sweep_parser.add_argument(
        "job", choices=["follow-ups", "scheduled-automations", "missed-appointments"],
    )
    sweep_parser.add_argument("--payload", default="{}", help="JSON options for the sweep")

    booking_parser = sub.add_parser("schedule-booking", help="reconcile follow-ups for a booking")
    booking_parser.add_argument("owner_id")
    booking_parser.add_argument("booking_id")
    booking_parser.add_argument("--calendar-id", default=None)

    import_parser = sub.add_parser("import-automations", help="import automations from YAML or JSON")
    import_parser.add_argument("owner_id")
    import_parser.add_argument("path")
    import_parser.add_argument("--replace", action="store_true", help="drop existing automations first")

    return parser.parse_args(argv)


async def _dispatch(args: argparse.Namespace) -> int:
    runtime = build_runtime(args.db)
    try:
        if args.command == "serve":
            await serve(runtime)
        elif args.command == "sweep":
            print(json.dumps(await sweep(runtime, args.job, json.loads(args.payload)), indent=2))
        elif args.command == "schedule-booking":
            result = await runtime.scheduler.schedule_for_booking(
                args.owner_id, args.booking_id, args.calendar_id,
            )
            print(json.dumps(result.to_dict(), indent=2))
            return 0 if result.ok else 1
        elif args.command == "import-automations":
            await import_automations(runtime, args.owner_id, args.path, replace=args.replace)
    finally:
        runtime.close()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    try:
        return asyncio.run(_dispatch(args))
    except KeyboardInterrupt:
        log.info("Interrupted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
