"""
Management command running the terminal sync agent.

Usage:
    python manage.py terminal_sync                # sync every TERMINAL_SYNC_INTERVAL_SECONDS
    python manage.py terminal_sync --once         # one cycle, then exit
    python manage.py terminal_sync --stats        # show the local queue
    python manage.py terminal_sync --retry-failed # re-queue intents that gave up
    python manage.py terminal_sync --purge-cache  # drop stale cached vouchers
"""

import time

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from apps.terminal.services import (
    HttpSyncTransport,
    SyncAgent,
    clear_expired_cache,
    get_queue_stats,
    retry_failed_intents,
)


class Command(BaseCommand):
    help = 'Synchronize offline redemptions of this terminal with the voucher server'

    def add_arguments(self, parser):
        parser.add_argument(
            '--once',
            action='store_true',
            help='Run a single sync cycle and exit',
        )
        parser.add_argument(
            '--stats',
            action='store_true',
            help='Print queue statistics and exit',
        )
        parser.add_argument(
            '--retry-failed',
            action='store_true',
            help='Put redemptions that reached the attempts ceiling back in the queue',
        )
        parser.add_argument(
            '--purge-cache',
            action='store_true',
            help='Delete cached vouchers older than TERMINAL_VOUCHER_CACHE_HOURS',
        )

    def handle(self, *args, **options):
        if options['stats']:
            self._print_stats()
            return

        if options['retry_failed']:
            count = retry_failed_intents()
            self.stdout.write(self.style.SUCCESS(f'Re-queued {count} redemption(s).'))

        if options['purge_cache']:
            count = clear_expired_cache()
            self.stdout.write(self.style.SUCCESS(f'Purged {count} cached voucher(s).'))

        if (options['retry_failed'] or options['purge_cache']) and not options['once']:
            return

        agent = SyncAgent(transport=self._build_transport())

        if options['once']:
            self._print_report(agent.sync_now())
            return

        self.stdout.write(f'Syncing {agent.device_id} every {agent.interval}s, Ctrl+C to stop.')
        agent.init()
        try:
            while agent.is_running:
                time.sleep(1)
        except KeyboardInterrupt:
            self.stdout.write('\nStopping...')
        finally:
            agent.shutdown(timeout=settings.TERMINAL_HTTP_TIMEOUT)

    def _build_transport(self):
        if not settings.TERMINAL_API_URL:
            raise CommandError('TERMINAL_API_URL is not configured.')
        return HttpSyncTransport.from_settings()

    def _print_report(self, report):
        if report.skipped:
            self.stdout.write(self.style.WARNING('A sync is already running.'))
        elif report.offline:
            self.stdout.write(self.style.WARNING('Server unreachable, nothing sent.'))
        elif report.sent == 0:
            self.stdout.write(self.style.SUCCESS('Nothing to sync.'))
        else:
            self.stdout.write(
                f'Sent {report.sent}: {report.synced} synced, '
                f'{report.conflicts} conflict(s), {report.errors} error(s)'
            )
            if report.error:
                self.stdout.write(self.style.ERROR(report.error))

    def _print_stats(self):
        stats = get_queue_stats()
        self.stdout.write(f"Pending redemptions:  {stats['pending_redemptions']}")
        self.stdout.write(f"Failed redemptions:   {stats['failed_redemptions']}")
        self.stdout.write(f"Oldest pending:       {stats['oldest_pending'] or '-'}")
        self.stdout.write(f"Cached vouchers:      {stats['cached_vouchers']}")
        self.stdout.write(f"Unresolved conflicts: {stats['unresolved_conflicts']}")
