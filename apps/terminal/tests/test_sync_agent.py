"""
Tests for the background sync agent.

Tests cover:
- Applying synced / conflict / error results to the local queue
- Redemption already made by another terminal (conflict scenario)
- Batch transport failures and offline postponement
- Single-flight cycles
- Agent lifecycle (init, shutdown, connectivity trigger)
"""

import pytest
import threading
from datetime import timedelta
from unittest.mock import patch

from django.utils import timezone

from apps.terminal.models import Conflict, IntentStatus, PendingRedemptionIntent, TerminalDevice
from apps.terminal.services import SyncCycleReport, enqueue_intent
from apps.vouchers.models import Redemption, Voucher, VoucherStatus
from apps.vouchers.services import redeem_voucher


@pytest.mark.django_db
class TestSyncCycle:

    def test_nothing_to_sync(self, agent):
        report = agent.sync_now()

        assert report == SyncCycleReport()

    def test_synced_intent_is_removed(self, agent, voucher):
        intent = enqueue_intent(voucher_code=voucher.code, cafeteria_id=1, signature=voucher.signature)

        report = agent.sync_now()

        assert report.sent == 1
        assert report.synced == 1
        assert not PendingRedemptionIntent.objects.exists()

        redemption = Redemption.objects.get(voucher=voucher)
        assert redemption.local_id == intent.local_id
        assert redemption.device_id == 'terminal-test'
        assert Voucher.objects.get(pk=voucher.pk).status == VoucherStatus.REDEEMED

    def test_sync_records_last_sync_time(self, agent, voucher):
        TerminalDevice.objects.create(device_id='terminal-test')
        enqueue_intent(voucher_code=voucher.code, cafeteria_id=1)

        agent.sync_now()

        assert TerminalDevice.objects.get().last_sync_at is not None

    def test_voucher_redeemed_elsewhere_becomes_conflict(self, agent, vouchers):
        """Queue A and B offline; A is redeemed by another terminal before sync."""
        voucher_a, voucher_b = vouchers
        intent_a = enqueue_intent(voucher_code=voucher_a.code, cafeteria_id=1)
        enqueue_intent(voucher_code=voucher_b.code, cafeteria_id=1)
        redeem_voucher(
            code=voucher_a.code,
            cafeteria_id=2,
            device_id='terminal-other',
            local_id='other-1',
        )

        report = agent.sync_now()

        assert report.synced == 1
        assert report.conflicts == 1
        assert PendingRedemptionIntent.objects.count() == 0

        conflict = Conflict.objects.get()
        assert conflict.local_id == intent_a.local_id
        assert conflict.voucher_code == voucher_a.code
        assert conflict.reason == 'ALREADY_REDEEMED'
        assert conflict.server_cafeteria_id == 2
        assert conflict.server_device_id == 'terminal-other'
        assert conflict.server_timestamp is not None
        assert conflict.resolved is False

        assert Redemption.objects.get(voucher=voucher_b).device_id == 'terminal-test'

    def test_rejected_item_is_retried_later(self, agent):
        intent = enqueue_intent(voucher_code='HPN-1999-0001', cafeteria_id=1)

        report = agent.sync_now()

        assert report.errors == 1
        intent.refresh_from_db()
        assert intent.status == IntentStatus.PENDING
        assert intent.attempts == 1
        assert intent.next_attempt_at is not None
        assert intent.last_error

    def test_malformed_row_does_not_hold_back_the_batch(self, agent, voucher):
        bad = PendingRedemptionIntent.objects.create(
            local_id='legacy-1',
            voucher_code='X' * 40,
            cafeteria_id=1,
            local_timestamp=timezone.now() - timedelta(minutes=5),
        )
        enqueue_intent(voucher_code=voucher.code, cafeteria_id=1)

        report = agent.sync_now()

        assert report.synced == 1
        assert report.errors == 1
        assert Redemption.objects.get(voucher=voucher).device_id == 'terminal-test'
        bad.refresh_from_db()
        assert bad.attempts == 1

    def test_second_sync_skips_intents_in_backoff(self, agent):
        enqueue_intent(voucher_code='HPN-1999-0001', cafeteria_id=1)

        with patch('apps.terminal.services.offline_queue.backoff_delay', return_value=3600):
            agent.sync_now()
        report = agent.sync_now()

        assert report.sent == 0

    def test_already_synced_intent_is_not_a_conflict(self, agent, voucher):
        """Server kept a redemption whose response never reached the terminal."""
        intent = enqueue_intent(voucher_code=voucher.code, cafeteria_id=1)
        redeem_voucher(
            code=voucher.code,
            cafeteria_id=1,
            device_id='terminal-test',
            local_id=intent.local_id,
        )

        report = agent.sync_now()

        assert report.synced == 1
        assert not Conflict.objects.exists()
        assert Redemption.objects.count() == 1


@pytest.mark.django_db
class TestSyncFailures:

    def test_offline_postpones_without_counting_attempts(self, offline_agent):
        intent = enqueue_intent(voucher_code='HPN-2026-0001', cafeteria_id=1)

        report = offline_agent.sync_now()

        assert report.offline is True
        intent.refresh_from_db()
        assert intent.attempts == 0
        assert offline_agent.transport.batches == []

    def test_transport_failure_counts_for_every_item(self, flaky_agent):
        enqueue_intent(voucher_code='HPN-2026-0001', cafeteria_id=1)
        enqueue_intent(voucher_code='HPN-2026-0002', cafeteria_id=1)

        report = flaky_agent.sync_now()

        assert report.sent == 2
        assert report.errors == 2
        assert 'connection reset' in report.error
        assert list(PendingRedemptionIntent.objects.values_list('attempts', flat=True)) == [1, 1]

    def test_item_missing_from_response_is_a_failure(self, scripted_agent):
        agent = scripted_agent({'results': []})
        intent = enqueue_intent(voucher_code='HPN-2026-0001', cafeteria_id=1)

        report = agent.sync_now()

        assert report.errors == 1
        intent.refresh_from_db()
        assert intent.last_error == 'missing from server response'

    def test_unknown_local_id_in_response_is_ignored(self, scripted_agent):
        intent = enqueue_intent(voucher_code='HPN-2026-0001', cafeteria_id=1)
        agent = scripted_agent({'results': [
            {'local_id': 'not-mine', 'status': 'synced'},
            {'local_id': intent.local_id, 'status': 'synced'},
        ]})

        report = agent.sync_now()

        assert report.synced == 1
        assert report.errors == 0

    def test_batch_respects_batch_size(self, scripted_agent):
        agent = scripted_agent({'results': []})
        agent.batch_size = 2
        for n in range(1, 4):
            enqueue_intent(voucher_code=f'HPN-2026-000{n}', cafeteria_id=1)

        agent.sync_now()

        assert len(agent.transport.batches[0]) == 2


@pytest.mark.django_db
class TestSingleFlight:

    def test_cycle_is_skipped_while_another_runs(self, agent, voucher):
        enqueue_intent(voucher_code=voucher.code, cafeteria_id=1)

        agent._lock.acquire()
        try:
            assert agent.is_syncing
            report = agent.sync_now()
        finally:
            agent._lock.release()

        assert report.skipped is True
        assert PendingRedemptionIntent.objects.count() == 1
        assert not agent.is_syncing


@pytest.mark.django_db
class TestLifecycle:

    def test_connectivity_trigger_runs_inline_without_thread(self, agent, voucher):
        enqueue_intent(voucher_code=voucher.code, cafeteria_id=1)

        report = agent.notify_connectivity_restored()

        assert report.synced == 1

    def test_init_and_shutdown(self, agent):
        calls = []
        woke = threading.Event()

        def fake_sync():
            calls.append(1)
            if len(calls) >= 2:
                woke.set()
            return SyncCycleReport()

        with patch.object(agent, 'sync_now', side_effect=fake_sync):
            agent.init()
            assert agent.is_running

            assert agent.notify_connectivity_restored() is None
            assert woke.wait(timeout=5)

            agent.shutdown(timeout=5)

        assert not agent.is_running
        assert len(calls) >= 2

    def test_shutdown_without_init_is_noop(self, agent):
        agent.shutdown()

        assert not agent.is_running
