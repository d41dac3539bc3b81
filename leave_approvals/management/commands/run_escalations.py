from __future__ import annotations

import time

from django.core.management.base import BaseCommand

from ...conf import workflow_setting
from ...escalation import EscalationScheduler


class Command(BaseCommand):
    help = "Escalate approval levels that have been pending past their thresholds."

    def add_arguments(self, parser):
        parser.add_argument(
            "--force",
            action="store_true",
            help="Run even if the configured interval has not elapsed since the last run.",
        )
        parser.add_argument(
            "--loop",
            action="store_true",
            help="Keep running, sleeping for ESCALATION_INTERVAL seconds between runs.",
        )

    def handle(self, *args, **options):
        while True:
            report = EscalationScheduler().run_once(force=options["force"])
            if report is None:
                self.stdout.write("Escalation run skipped (interval not elapsed or another run in progress).")
            else:
                self.stdout.write(
                    self.style.SUCCESS(
                        f"Scanned {report.scanned} level(s); escalated {report.escalated}, "
                        f"oversight {report.oversight_escalated}, conflicts {report.conflicts}."
                    )
                )
            if not options["loop"]:
                break
            time.sleep(workflow_setting("ESCALATION_INTERVAL"))
