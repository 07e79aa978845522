#!/usr/bin/env python
"""Send low-score reminders once. Meant to be run from cron."""
import logging
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from wgchores import app as wg  # noqa: E402
from wgchores.notifications import LoggingNotifier, low_score_reminder  # noqa: E402


def main() -> int:
    logging.basicConfig(level=logging.INFO)
    notified = low_score_reminder(
        LoggingNotifier(),
        wg.user_store,
        wg.chore_list_store,
        wg.activity_store,
        wg.absence_store,
        wg.settings_store.get_low_score_threshold(),
    )
    logging.getLogger(__name__).info("Reminded %d users", notified)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
