"""
Store Expansion Engine - command-line entry point.

    python main.py validate 52.5163 13.3777 --adaptive
    python main.py snap 52.5163 13.3777
    python main.py submit --key req-1 --user alice --params '{"region": {"country": "DE"}, "aggression": 40}'
    python main.py status <job-id>
    python main.py cleanup --hours 24
    python main.py worker --candidates sites.json --once
"""

import argparse
import json
import logging
import sys

from geodata.errors import GeodataError
from expansion.config import Settings
from expansion.jobs import InvalidJobParams
from expansion.pipeline import ExpansionPipeline, JsonCandidateGenerator
from expansion.runner import JobRunner
from expansion.services import build_services

log = logging.getLogger("expansion.cli")


def _print(data):
    print(json.dumps(data, indent=2, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Store expansion candidate evaluation")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    validate = sub.add_parser("validate", help="Check suitability of a coordinate")
    validate.add_argument("lat", type=float)
    validate.add_argument("lng", type=float)
    validate.add_argument("--adaptive", action="store_true", help="Escalate the search radius")

    snap = sub.add_parser("snap", help="Snap a coordinate to the nearest road or building")
    snap.add_argument("lat", type=float)
    snap.add_argument("lng", type=float)

    submit = sub.add_parser("submit", help="Create (or reuse) an expansion job")
    submit.add_argument("--key", required=True, help="Idempotency key")
    submit.add_argument("--user", required=True, help="User id")
    submit.add_argument("--params", required=True, help="Generation params as JSON")

    status = sub.add_parser("status", help="Show a job")
    status.add_argument("job_id")

    cleanup = sub.add_parser("cleanup", help="Delete finished jobs past retention")
    cleanup.add_argument("--hours", type=float, default=24)

    worker = sub.add_parser("worker", help="Process queued jobs")
    worker.add_argument("--candidates", required=True, help="JSON file of candidate sites")
    worker.add_argument("--once", action="store_true", help="Process at most one job and exit")

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    services = build_services(Settings.from_env())
    try:
        if args.command == "validate":
            if args.adaptive:
                result = services.validator.validate_location_adaptive(args.lat, args.lng)
            else:
                result = services.validator.validate_location(args.lat, args.lng)
            _print({"result": result.to_dict(), "rejections": services.validator.get_rejection_stats()})

        elif args.command == "snap":
            _print(services.snapper.snap_to_infrastructure(args.lat, args.lng).to_dict())

        elif args.command == "submit":
            job_id, reused = services.jobs.create_job(args.key, args.user, json.loads(args.params))
            _print({"jobId": job_id, "isReused": reused})

        elif args.command == "status":
            job = services.jobs.get_job(args.job_id)
            if job is None:
                log.error(f"Job {args.job_id} not found")
                return 1
            _print(job.to_dict())

        elif args.command == "cleanup":
            _print({"deleted": services.jobs.cleanup_old_jobs(args.hours)})

        elif args.command == "worker":
            pipeline = ExpansionPipeline(
                JsonCandidateGenerator(args.candidates),
                services.calculator,
                validator=services.validator,
                snapper=services.snapper,
                model_version=services.settings.model_version,
                batch_concurrency=services.settings.batch_concurrency,
            )
            runner = JobRunner(services.jobs, pipeline)
            if args.once:
                processed = runner.run_once()
                _print({"processed": processed, "queue": services.jobs.get_queue_stats()})
            else:
                runner.install_signal_handlers()
                runner.run()

    except InvalidJobParams as e:
        log.error(f"Invalid job params: {e}")
        return 2
    except json.JSONDecodeError as e:
        log.error(f"--params is not valid JSON: {e}")
        return 2
    except GeodataError as e:
        log.error(f"Geodata provider error: {e}")
        return 1
    finally:
        services.shutdown()

    return 0


if __name__ == "__main__":
    sys.exit(main())
