from __future__ import annotations

import time

from django.core.management.base import BaseCommand

from ...dispatcher import NotificationDispatcher
from ...notification_queue import NotificationQueue


class Command(BaseCommand):
    help = "Deliver pending leave workflow notifications through the configured channels."

    def add_arguments(self, parser):
        parser.add_argument(
            "--loop",
            action="store_true",
            help="Keep dispatching until interrupted.",
        )
        parser.add_argument(
            "--interval",
            type=int,
            default=60,
            help="Seconds to sleep between cycles when looping (default: 60).",
        )
        parser.add_argument(
            "--stats",
            action="store_true",
            help="Print queue counts per status and exit without dispatching.",
        )

    def handle(self, *args, **options):
        queue = NotificationQueue()
        if options["stats"]:
            for status, count in queue.statistics().items():
                self.stdout.write(f"{status}: {count}")
            return

        dispatcher = NotificationDispatcher(queue=queue)
        while True:
            report = dispatcher.run_cycle()
            self.stdout.write(
                self.style.SUCCESS(
                    f"Processed {report.processed} notification(s): {report.sent} sent, "
                    f"{report.retried} to retry, {report.failed} failed, {report.expired} expired."
                )
            )
            if not options["loop"]:
                break
            time.sleep(options["interval"])
