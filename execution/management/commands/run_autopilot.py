import logging
import time

from django.core.management.base import BaseCommand

from execution.runtime import get_runtime
from strategies.scheduler import StrategyScheduler, evaluate_once

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Run the strategy scheduler and the reconciliation loop in-process until interrupted"

    def add_arguments(self, parser):
        parser.add_argument("--no-scheduler", action="store_true", help="Only reconcile existing brackets.")
        parser.add_argument("--no-reconcile", action="store_true", help="Only schedule strategies.")
        parser.add_argument(
            "--evaluate",
            type=int,
            metavar="STRATEGY_ID",
            help="Evaluate one strategy once (manual trigger) and exit.",
        )

    def handle(self, *args, **options):
        runtime = get_runtime()
        if options.get("evaluate"):
            outcome = evaluate_once(options["evaluate"], runtime=runtime)
            self.stdout.write(f"strategy {options['evaluate']}: {outcome}")
            return

        scheduler = None
        if not options["no_scheduler"]:
            scheduler = StrategyScheduler(runtime)
            scheduler.start()
        if not options["no_reconcile"]:
            runtime.reconciler.start()
        self.stdout.write("Autopilot started.")
        try:
            while True:
                logger.info("autopilot heartbeat")
                time.sleep(30)
        except KeyboardInterrupt:
            self.stdout.write("Stopping autopilot...")
        finally:
            if scheduler is not None:
                scheduler.stop(timeout=10)
            runtime.shutdown()
        self.stdout.write("Autopilot stopped.")
