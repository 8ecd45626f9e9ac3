import argparse
import json
import sys
from pathlib import Path

from . import runner
from .config import resolve_config
from .container import build_container
from .errors import PipelineError
from .logging_setup import setup_logging
from .queue import SQLiteQueue
from .state import MediaKind


def _print_block(title, rows):
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)
    for label, value in rows:
        print(f"{label + ':':<22}{value}")
    print("=" * 60)


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="media-pipeline", description="Asynchronous article-to-media generation pipeline"
    )
    parser.add_argument("--db", type=str, help="Queue database path")
    parser.add_argument("--database-url", type=str, help="Domain database URL")
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log verbosity"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # INIT-DB
    subparsers.add_parser("init-db", help="Create domain tables and the job queue")

    # WORKER
    worker_parser = subparsers.add_parser("worker", help="Run the job worker and timeout monitor")
    worker_parser.add_argument("--workers", "-w", type=int, help="Number of parallel job slots")
    worker_parser.add_argument("--max-jobs", type=int, help="Stop after this many jobs")
    worker_parser.add_argument(
        "--until-empty", action="store_true", help="Stop once no job is due"
    )
    worker_parser.add_argument(
        "--no-monitor", action="store_true", help="Do not run the timeout monitor"
    )

    # API
    api_parser = subparsers.add_parser("api", help="Serve the HTTP API and webhook receivers")
    api_parser.add_argument("--host", type=str, help="Bind address")
    api_parser.add_argument("--port", type=int, help="Bind port")

    # SWEEP
    subparsers.add_parser("sweep", help="Run one timeout sweep and exit")

    # SUBMIT
    submit_parser = subparsers.add_parser("submit", help="Create a submission from a text file")
    submit_parser.add_argument("--input", "-i", type=str, required=True, help="Article text file")
    submit_parser.add_argument("--title", type=str, help="Article title (default: file name)")
    submit_parser.add_argument("--org", type=str, default="default", help="Organization id")
    submit_parser.add_argument(
        "--outputs",
        type=str,
        default="audio",
        help=f"Comma-separated output kinds ({','.join(k.value for k in MediaKind)})",
    )
    submit_parser.add_argument("--language", type=str, default="ENGLISH", help="Script language")
    submit_parser.add_argument(
        "--full", action="store_true", help="Generate media right after the script (no review)"
    )

    # QUEUE subcommands (status, prune)
    queue_parser = subparsers.add_parser("queue", help="Manage job queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")
    queue_subparsers.add_parser("status", help="Show queue status")
    queue_subparsers.add_parser("prune", help="Reset crashed jobs and prune finished ones")

    # JOB subcommands (status, remove)
    job_parser = subparsers.add_parser("job", help="Inspect or remove one job")
    job_subparsers = job_parser.add_subparsers(dest="job_command", help="Job commands")
    job_status_parser = job_subparsers.add_parser("status", help="Show one job")
    job_status_parser.add_argument("job_id", type=str)
    job_remove_parser = job_subparsers.add_parser("remove", help="Remove a job that is not running")
    job_remove_parser.add_argument("job_id", type=str)

    args = parser.parse_args(argv)

    # Convert args to dict, filtering None
    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    config = resolve_config(cli_dict)
    setup_logging(config.logging.level)

    if args.command == "init-db":
        build_container(config).store.create_schema()
        SQLiteQueue(config.queue.db_path).close()
        print(f"✅ Database ready: {config.database.url}")
        print(f"✅ Queue ready: {config.queue.db_path}")

    elif args.command == "worker":
        stats = runner.run_worker(
            build_container(config), max_jobs=args.max_jobs, until_empty=args.until_empty
        )
        _print_block(
            "PROCESSING SUMMARY",
            [
                ("Succeeded", stats["succeeded"]),
                ("Retried", stats["retried"]),
                ("Failed", stats["failed"]),
                ("Total duration", f"{stats['total_duration']:.2f}s"),
            ],
        )

    elif args.command == "api":
        import uvicorn

        from .api.main import create_app

        uvicorn.run(create_app(build_container(config)), host=config.api.host, port=config.api.port)

    elif args.command == "sweep":
        container = build_container(config)
        container.store.create_schema()
        report = container.monitor.sweep()
        _print_block(
            "TIMEOUT SWEEP",
            [
                ("Outputs failed", len(report.failed)),
                ("Submissions updated", len(report.submissions)),
                ("Errors", report.errors),
            ],
        )
        for kind, output_id in report.failed:
            print(f"  {kind.value:<22}{output_id}")
        if report.errors:
            sys.exit(1)

    elif args.command == "submit":
        path = Path(args.input)
        if not path.is_file():
            print(f"❌ Input file not found: {path}")
            sys.exit(1)
        try:
            kinds = [MediaKind(k.strip()) for k in args.outputs.split(",") if k.strip()]
        except ValueError as e:
            print(f"❌ {e}")
            sys.exit(1)

        container = build_container(config)
        container.store.create_schema()
        try:
            article = container.store.create_article(
                args.org, args.title or path.stem, path.read_text(encoding="utf-8")
            )
            result = container.submissions.create(
                article["id"], kinds, language=args.language, mode="full" if args.full else "script"
            )
        except PipelineError as e:
            print(f"❌ {e.message}")
            sys.exit(1)
        print(json.dumps(result, indent=2))

    elif args.command == "queue":
        # Queue management subcommands
        if args.queue_command == "status":
            stats = runner.get_queue_stats(config)
            _print_block(
                "QUEUE STATUS",
                [
                    ("Pending", stats["pending"]),
                    ("Running", stats["running"]),
                    ("Completed", stats["completed"]),
                    ("Failed", stats["failed"]),
                    ("Total", stats["total"]),
                ],
            )

        elif args.queue_command == "prune":
            counts = runner.run_maintenance(config)
            print(f"Reset {counts['reset']} stale job(s), pruned {counts['pruned']} finished job(s)")

        else:
            queue_parser.print_help()

    elif args.command == "job":
        queue = SQLiteQueue(config.queue.db_path)
        try:
            if args.job_command == "status":
                view = queue.get_status(args.job_id)
                if view is None:
                    print(f"❌ Job not found: {args.job_id}")
                    sys.exit(1)
                print(json.dumps(view.model_dump(mode="json"), indent=2))

            elif args.job_command == "remove":
                if queue.get_status(args.job_id) is None:
                    print(f"❌ Job not found: {args.job_id}")
                    sys.exit(1)
                if not queue.remove(args.job_id):
                    print(f"❌ Job {args.job_id} is running and cannot be removed")
                    sys.exit(1)
                print(f"✅ Removed job {args.job_id}")

            else:
                job_parser.print_help()
        finally:
            queue.close()

    else:
        parser.print_help()


if __name__ == "__main__":
    main()
