import logging
import random
import time

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from donations.container import get_container

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Run the recurring donation scheduler and ledger reconciler."

    def add_arguments(self, parser):
        parser.add_argument(
            "--once",
            action="store_true",
            help="Run one scheduler pass and one reconciliation pass, then exit",
        )
        parser.add_argument(
            "--no-reconcile",
            action="store_false",
            dest="reconcile",
            help="Do not run the ledger reconciler",
        )
        parser.add_argument(
            "--poll-seconds",
            type=float,
            default=1.0,
            help="How often the foreground loop checks for shutdown",
        )

    def handle(self, *args, **options):
        poll_seconds = options["poll_seconds"]
        if poll_seconds <= 0:
            raise CommandError("--poll-seconds must be greater than zero")

        container = get_container()
        if options["once"]:
            self._run_once(container, reconcile=options["reconcile"])
            return

        startup_jitter_max = settings.WORKER_STARTUP_JITTER_MAX
        if startup_jitter_max > 0:
            startup_wait = random.uniform(0, startup_jitter_max)
            logger.info(
                "event=worker_startup_jitter startup_delay_ms=%s",
                int(startup_wait * 1000),
            )
            time.sleep(startup_wait)

        container.scheduler.start()
        if options["reconcile"]:
            container.reconciler.start()
        self.stdout.write(self.style.SUCCESS("donation workers started"))

        try:
            while True:
                time.sleep(poll_seconds)
        except KeyboardInterrupt:
            logger.info("event=worker_shutdown_requested")
        finally:
            container.scheduler.stop()
            container.reconciler.stop()
            self.stdout.write(self.style.SUCCESS("donation workers stopped"))

    def _run_once(self, container, *, reconcile):
        summary = container.scheduler.process_schedules()
        self.stdout.write(
            self.style.SUCCESS(
                "scheduler run completed: "
                f"due={summary['due']} succeeded={summary['succeeded']} "
                f"failed={summary['failed']} skipped={summary['skipped']} "
                f"deferred={summary['deferred']}"
            )
        )
        if not reconcile:
            return

        run = container.reconciler.reconcile()
        totals = run.totals
        self.stdout.write(
            self.style.SUCCESS(
                f"reconciliation run {run.status}: "
                f"accounts={len(run.accounts)} created={totals['created']} "
                f"repaired={totals['repaired']} unchanged={totals['unchanged']} "
                f"discrepancies={totals['discrepancies']}"
            )
        )
