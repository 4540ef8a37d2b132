#!/usr/bin/env python3
"""Send due scheduled reports and upcoming appointment reminders.
Run hourly from cron after exporting env vars.
"""

from __future__ import annotations

import argparse

from app import app, init_db, run_scheduled_reports, send_appointment_reminders_batch, DEFAULT_REMINDER_HOURS


def main():
    parser = argparse.ArgumentParser(description='Lead Velocity scheduled jobs')
    parser.add_argument('--skip-reports', action='store_true')
    parser.add_argument('--skip-reminders', action='store_true')
    parser.add_argument('--hours-ahead', type=int, default=DEFAULT_REMINDER_HOURS)
    args = parser.parse_args()

    with app.app_context():
        init_db()
        if not args.skip_reports:
            results = run_scheduled_reports()
            for result in results:
                print(f"report={result['report_id']} status={result['status']}")
            print(f"reports_processed={len(results)}")
        if not args.skip_reminders:
            reminders = send_appointment_reminders_batch(args.hours_ahead)
            print(f"reminder_emails_sent={reminders['sent']}")


if __name__ == '__main__':
    main()
