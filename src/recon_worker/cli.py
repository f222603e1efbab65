import argparse
import signal
import sys
import threading

from .config import resolve_config
from .errors import ReconWorkerError
from .jobs.consumer import JobPublisher, QueueConsumer
from .jobs.pipeline import JobPipeline
from .jobs.sqlite_store import SQLiteStatusStore
from .logging_config import configure_logging
from .tool_runner import ToolRunner


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="recon-worker", description="Photogrammetry reconstruction worker"
    )
    parser.add_argument("--config-dir", type=str, help="Directory holding default.yaml/local.yaml")
    parser.add_argument("--db", type=str, help="Status database path")
    parser.add_argument("--projects-root", type=str, help="Local working area root")
    parser.add_argument("--queue-name", type=str, help="Work queue name")
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level")
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # CONSUME
    subparsers.add_parser("consume", help="Consume job ids from the queue until stopped")

    # RUN
    run_parser = subparsers.add_parser("run", help="Run one job synchronously")
    run_parser.add_argument("job_id", type=str, help="Job identifier")

    # ENQUEUE
    enqueue_parser = subparsers.add_parser("enqueue", help="Publish job ids to the queue")
    enqueue_parser.add_argument("job_ids", nargs="+", help="Job identifiers")
    enqueue_parser.add_argument(
        "--reset", action="store_true", help="Reset jobs to pending before publishing"
    )

    # STATUS
    status_parser = subparsers.add_parser("status", help="Show a job record and its transitions")
    status_parser.add_argument("job_id", type=str, help="Job identifier")

    # CHECK
    subparsers.add_parser("check", help="Verify the reconstruction tools are installed")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return

    configure_logging(args.log_level)
    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    config = resolve_config(cli_dict, config_dir=args.config_dir)

    if args.command == "consume":
        cancel_event = threading.Event()
        pipeline = JobPipeline.from_config(config, cancel_event=cancel_event)
        consumer = QueueConsumer(pipeline, config.queue, cancel_event=cancel_event)

        def _shutdown(signum, frame):
            consumer.stop()

        signal.signal(signal.SIGTERM, _shutdown)
        signal.signal(signal.SIGINT, _shutdown)
        consumer.run()

    elif args.command == "run":
        pipeline = JobPipeline.from_config(config)
        try:
            result = pipeline.run(args.job_id)
        except ReconWorkerError as e:
            print(f"❌ Job {args.job_id} failed: {type(e).__name__}: {e}")
            sys.exit(1)
        print(f"✅ Job {args.job_id} done ({result.duration_s:.1f}s)")
        for key in result.model_urls:
            print(f"   {key}")
        for outcome in result.soft_failures:
            print(f"⚠️  {outcome.stage}: {outcome.error}")

    elif args.command == "enqueue":
        if args.reset:
            store = SQLiteStatusStore(config.status_store.db_path)
            for job_id in args.job_ids:
                try:
                    store.reset_job(job_id)
                except ReconWorkerError as e:
                    print(f"❌ {e}")
                    sys.exit(1)
        published = JobPublisher(config.queue).publish(args.job_ids)
        print(f"Enqueued {len(published)} job(s) on {config.queue.queue_name}")

    elif args.command == "status":
        store = SQLiteStatusStore(config.status_store.db_path)
        job = store.get_job(args.job_id)
        if job is None:
            print(f"❌ Job {args.job_id} not found")
            sys.exit(1)

        print("\n" + "=" * 60)
        print(f"JOB {job.id}")
        print("=" * 60)
        print(f"Status:               {job.status.value}")
        print(f"Files:                {len(job.files)}")
        print(f"Parameters:           -d {job.detail} -o {job.ordering} -f {job.feature}")
        print(f"Notify target:        {job.telegram_user or '-'}")
        print(f"Process start:        {job.process_start or '-'}")
        print(f"Process end:          {job.process_end or '-'}")
        for key in job.model_urls:
            print(f"Artifact:             {key}")
        print("-" * 60)
        for t in store.get_transitions(job.id):
            print(f"{t['timestamp']}  {t['from_state'] or '-'} -> {t['to_state']}")
        print("=" * 60)

    elif args.command == "check":
        print("Checking tools...")
        runner = ToolRunner.from_config(config.tools)
        missing = False
        for name in (config.tools.build_executable, config.tools.convert_executable):
            if runner.check_executable(name):
                print(f"✅ {name} found.")
            else:
                print(f"❌ {name} NOT found in {config.tools.lib_dir}.")
                missing = True
        if missing:
            sys.exit(1)


if __name__ == "__main__":
    main()
