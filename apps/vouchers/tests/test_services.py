"""
Service layer unit tests for vouchers app.

Tests cover:
- Issuance rules and code numbering
- Voucher state machine and lazy expiry
- Exactly-once redemption (replay, conflict, races)
- Cancellation guards
- Offline sync reconciliation
"""

import logging
import pytest
import threading
from datetime import timedelta
from unittest.mock import patch
from uuid import uuid4

from django.db import connection
from django.test import TransactionTestCase
from django.utils import timezone

from apps.stays.models import Stay, StayStatus
from apps.vouchers.models import Redemption, SyncLogEntry, Voucher, VoucherStatus
from apps.vouchers.services import (
    issue_vouchers,
    validate_voucher,
    redeem_voucher,
    cancel_voucher,
    sync_batch,
    get_sync_history,
    get_sync_stats,
    get_signer,
    RedemptionIntent,
    RejectedIntent,
    Synced,
    Conflict,
    Failed,
)
from apps.vouchers.services.exceptions import (
    AlreadyRedeemedError,
    ConflictError,
    ExpiryError,
    LocalIdReuseError,
    NotYetValidError,
    SignatureError,
    StateError,
    StayNotActiveError,
    StayNotFoundError,
    VoucherCancelledError,
    VoucherNotFoundError,
    VoucherValidationError,
)


# =============================================================================
# Issuance Tests
# =============================================================================

@pytest.mark.django_db
class TestIssuance:
    """Tests for issuance.py service functions."""

    def test_issue_batch(self, active_stay, reception_user, today):
        vouchers = issue_vouchers(
            stay_id=active_stay.id,
            quantity=3,
            valid_from=today,
            valid_until=today + timedelta(days=2),
            issued_by=reception_user,
        )

        year = today.year
        assert [v.code for v in vouchers] == [
            f'HPN-{year}-0001',
            f'HPN-{year}-0002',
            f'HPN-{year}-0003',
        ]
        assert all(v.status == VoucherStatus.ACTIVE for v in vouchers)
        assert Voucher.objects.filter(stay=active_stay).count() == 3

    def test_issued_vouchers_are_signed(self, issue):
        signer = get_signer()

        for voucher in issue(quantity=2):
            signer.verify_voucher(voucher, voucher.signature)

    def test_numbering_continues_across_batches(self, issue, today):
        issue(quantity=2)
        second = issue(quantity=2)

        assert [v.code for v in second] == [
            f'HPN-{today.year}-0003',
            f'HPN-{today.year}-0004',
        ]

    def test_hotel_code_prefix(self, issue, settings, today):
        settings.HOTEL_CODE = 'HSM'

        voucher = issue()[0]

        assert voucher.code == f'HSM-{today.year}-0001'

    def test_unknown_stay(self, db, today):
        with pytest.raises(StayNotFoundError):
            issue_vouchers(
                stay_id=uuid4(),
                quantity=1,
                valid_from=today,
                valid_until=today,
            )

    def test_inactive_stay(self, completed_stay):
        with pytest.raises(StayNotActiveError):
            issue_vouchers(
                stay_id=completed_stay.id,
                quantity=1,
                valid_from=completed_stay.check_in,
                valid_until=completed_stay.check_in,
            )

    def test_window_must_be_ordered(self, active_stay, today):
        with pytest.raises(VoucherValidationError, match='La fecha de inicio debe ser anterior a la fecha de fin'):
            issue_vouchers(
                stay_id=active_stay.id,
                quantity=1,
                valid_from=today + timedelta(days=1),
                valid_until=today,
            )

    def test_window_must_fit_stay(self, active_stay):
        with pytest.raises(VoucherValidationError, match='período de estadía'):
            issue_vouchers(
                stay_id=active_stay.id,
                quantity=1,
                valid_from=active_stay.check_in,
                valid_until=active_stay.check_out + timedelta(days=1),
            )

        assert not Voucher.objects.exists()

    def test_window_may_span_whole_stay(self, active_stay):
        vouchers = issue_vouchers(
            stay_id=active_stay.id,
            quantity=1,
            valid_from=active_stay.check_in,
            valid_until=active_stay.check_out,
        )

        assert len(vouchers) == 1

    @pytest.mark.parametrize('quantity', [0, 4])
    def test_quantity_limits(self, issue, settings, quantity):
        settings.VOUCHER_MAX_BATCH = 3

        with pytest.raises(VoucherValidationError):
            issue(quantity=quantity)

        assert not Voucher.objects.exists()


# =============================================================================
# Validation / State Machine Tests
# =============================================================================

@pytest.mark.django_db
class TestValidation:
    """Tests for validation.py service functions."""

    def test_active_voucher_is_valid(self, voucher):
        result = validate_voucher(code=voucher.code)

        assert result.valid
        assert result.reason is None

    def test_valid_with_signature(self, voucher):
        assert validate_voucher(code=voucher.code, signature=voucher.signature).valid

    def test_wrong_signature(self, voucher):
        forged = get_signer().sign(voucher.code, uuid4(), voucher.valid_from, voucher.valid_until)

        with pytest.raises(SignatureError):
            validate_voucher(code=voucher.code, signature=forged)

    def test_unknown_code(self, db):
        with pytest.raises(VoucherNotFoundError):
            validate_voucher(code='HPN-2026-9999')

    def test_not_yet_valid_does_not_change_status(self, voucher):
        result = validate_voucher(code=voucher.code, today=voucher.valid_from - timedelta(days=1))

        voucher.refresh_from_db()
        assert not result.valid
        assert result.reason == 'VOUCHER_NOT_YET_VALID'
        assert voucher.status == VoucherStatus.ACTIVE

    def test_last_day_is_still_valid(self, voucher):
        assert validate_voucher(code=voucher.code, today=voucher.valid_until).valid

    def test_lazy_expiry_is_persisted(self, voucher):
        day_after = voucher.valid_until + timedelta(days=1)

        result = validate_voucher(code=voucher.code, today=day_after)

        voucher.refresh_from_db()
        assert result.reason == 'VOUCHER_EXPIRED'
        assert voucher.status == VoucherStatus.EXPIRED
        assert voucher.expired_at is not None

        # Stored status wins from now on, regardless of the clock
        again = validate_voucher(code=voucher.code, today=voucher.valid_from)
        assert again.reason == 'VOUCHER_EXPIRED'

    def test_redeemed_voucher_reports_redemption(self, voucher):
        redeem_voucher(code=voucher.code, cafeteria_id=2, device_id='term-a', local_id='l-1')

        result = validate_voucher(code=voucher.code)

        assert not result.valid
        assert result.reason == 'VOUCHER_REDEEMED'
        assert result.details['cafeteria_id'] == 2

    def test_cancelled_voucher(self, voucher):
        cancel_voucher(code=voucher.code, reason='Guest left early')

        assert validate_voucher(code=voucher.code).reason == 'VOUCHER_CANCELLED'


# =============================================================================
# Redemption Tests
# =============================================================================

@pytest.mark.django_db
class TestRedemption:
    """Tests for redemption.py service functions."""

    def test_redeem_success(self, voucher, cafeteria_user):
        redemption = redeem_voucher(
            code=voucher.code,
            cafeteria_id=1,
            device_id='term-a',
            local_id='l-1',
            user=cafeteria_user,
        )

        voucher.refresh_from_db()
        assert redemption.voucher_id == voucher.id
        assert redemption.redeemed_by == cafeteria_user
        assert voucher.status == VoucherStatus.REDEEMED
        assert voucher.redeemed_at == redemption.timestamp

    def test_redeem_with_valid_signature(self, voucher):
        redemption = redeem_voucher(
            code=voucher.code,
            signature=voucher.signature,
            cafeteria_id=1,
            device_id='term-a',
            local_id='l-1',
        )

        assert redemption.local_id == 'l-1'

    def test_redeem_with_forged_signature(self, voucher):
        forged = get_signer().sign(voucher.code, voucher.stay_id, voucher.valid_from, voucher.valid_from)

        with pytest.raises(SignatureError):
            redeem_voucher(
                code=voucher.code,
                signature=forged,
                cafeteria_id=1,
                device_id='term-a',
                local_id='l-1',
            )

        assert not Redemption.objects.exists()

    def test_replay_same_local_id_is_idempotent(self, voucher):
        first = redeem_voucher(code=voucher.code, cafeteria_id=1, device_id='term-a', local_id='l-1')
        second = redeem_voucher(code=voucher.code, cafeteria_id=1, device_id='term-a', local_id='l-1')

        assert first.id == second.id
        assert Redemption.objects.count() == 1

    def test_second_redemption_conflicts(self, voucher):
        winner = redeem_voucher(code=voucher.code, cafeteria_id=1, device_id='term-a', local_id='l-1')

        with pytest.raises(AlreadyRedeemedError) as exc_info:
            redeem_voucher(code=voucher.code, cafeteria_id=2, device_id='term-b', local_id='l-2')

        error = exc_info.value
        assert isinstance(error, ConflictError)
        assert error.code == 'ALREADY_REDEEMED'
        assert error.details['cafeteria_id'] == 1
        assert error.details['device_id'] == 'term-a'
        assert error.details['redeemed_at'] == winner.timestamp
        assert Redemption.objects.count() == 1

    def test_race_is_decided_by_unique_constraint(self, voucher):
        """A caller that read the voucher while still active loses at insert time."""
        stale = Voucher.objects.get(pk=voucher.pk)
        redeem_voucher(code=voucher.code, cafeteria_id=1, device_id='term-a', local_id='l-1')

        with patch('apps.vouchers.services.redemption.get_voucher_by_code', return_value=stale):
            with pytest.raises(AlreadyRedeemedError):
                redeem_voucher(code=voucher.code, cafeteria_id=2, device_id='term-b', local_id='l-2')

        assert Redemption.objects.filter(voucher=voucher).count() == 1

    def test_stale_replay_returns_existing(self, voucher):
        stale = Voucher.objects.get(pk=voucher.pk)
        first = redeem_voucher(code=voucher.code, cafeteria_id=1, device_id='term-a', local_id='l-1')

        with patch('apps.vouchers.services.redemption.get_voucher_by_code', return_value=stale):
            again = redeem_voucher(code=voucher.code, cafeteria_id=1, device_id='term-a', local_id='l-1')

        assert again.id == first.id

    def test_expired_voucher_is_flipped_and_rejected(self, voucher):
        with pytest.raises(ExpiryError):
            redeem_voucher(
                code=voucher.code,
                cafeteria_id=1,
                device_id='term-a',
                local_id='l-1',
                today=voucher.valid_until + timedelta(days=1),
            )

        voucher.refresh_from_db()
        assert voucher.status == VoucherStatus.EXPIRED
        assert not Redemption.objects.exists()

    def test_not_yet_valid(self, voucher):
        with pytest.raises(NotYetValidError):
            redeem_voucher(
                code=voucher.code,
                cafeteria_id=1,
                device_id='term-a',
                local_id='l-1',
                today=voucher.valid_from - timedelta(days=1),
            )

        voucher.refresh_from_db()
        assert voucher.status == VoucherStatus.ACTIVE

    def test_cancelled_voucher(self, voucher):
        cancel_voucher(code=voucher.code)

        with pytest.raises(VoucherCancelledError):
            redeem_voucher(code=voucher.code, cafeteria_id=1, device_id='term-a', local_id='l-1')

    def test_unknown_code(self, db):
        with pytest.raises(VoucherNotFoundError):
            redeem_voucher(code='HPN-2026-9999', cafeteria_id=1, device_id='term-a', local_id='l-1')

    def test_local_id_reuse_on_same_device(self, issue):
        first, second = issue(quantity=2)
        redeem_voucher(code=first.code, cafeteria_id=1, device_id='term-a', local_id='l-1')

        with pytest.raises(LocalIdReuseError):
            redeem_voucher(code=second.code, cafeteria_id=1, device_id='term-a', local_id='l-1')

        second.refresh_from_db()
        assert second.status == VoucherStatus.ACTIVE

    def test_local_id_scoped_per_device(self, issue):
        first, second = issue(quantity=2)

        redeem_voucher(code=first.code, cafeteria_id=1, device_id='term-a', local_id='l-1')
        redeem_voucher(code=second.code, cafeteria_id=1, device_id='term-b', local_id='l-1')

        assert Redemption.objects.count() == 2


# =============================================================================
# Cancellation Tests
# =============================================================================

@pytest.mark.django_db
class TestCancellation:
    """Tests for cancellation.py service functions."""

    def test_cancel_active(self, voucher, reception_user):
        cancelled = cancel_voucher(code=voucher.code, reason='Room change', user=reception_user)

        assert cancelled.status == VoucherStatus.CANCELLED
        assert cancelled.cancellation_reason == 'Room change'
        assert cancelled.cancelled_by == reception_user
        assert cancelled.cancelled_at is not None

    def test_cancel_redeemed(self, voucher):
        redeem_voucher(code=voucher.code, cafeteria_id=1, device_id='term-a', local_id='l-1')

        with pytest.raises(StateError, match='redimido'):
            cancel_voucher(code=voucher.code)

        voucher.refresh_from_db()
        assert voucher.status == VoucherStatus.REDEEMED

    def test_cancel_twice(self, voucher):
        cancel_voucher(code=voucher.code)

        with pytest.raises(StateError, match='cancelado'):
            cancel_voucher(code=voucher.code)

    def test_cancel_expired(self, voucher):
        validate_voucher(code=voucher.code, today=voucher.valid_until + timedelta(days=1))

        with pytest.raises(StateError, match='expirado'):
            cancel_voucher(code=voucher.code)

    def test_cancel_unknown(self, db):
        with pytest.raises(VoucherNotFoundError):
            cancel_voucher(code='HPN-2026-9999')


# =============================================================================
# Sync Reconciliation Tests
# =============================================================================

@pytest.mark.django_db
class TestSync:
    """Tests for sync.py service functions."""

    def test_mixed_batch(self, issue):
        first, second = issue(quantity=2)
        redeem_voucher(code=second.code, cafeteria_id=3, device_id='term-b', local_id='b-1')

        report = sync_batch(device_id='term-a', intents=[
            RedemptionIntent(local_id='a-1', voucher_code=first.code, cafeteria_id=1),
            RedemptionIntent(local_id='a-2', voucher_code=second.code, cafeteria_id=1),
            RedemptionIntent(local_id='a-3', voucher_code='HPN-2026-9999', cafeteria_id=1),
        ])

        synced, conflict, failed = report.results
        assert isinstance(synced, Synced)
        assert isinstance(conflict, Conflict)
        assert conflict.reason == 'ALREADY_REDEEMED'
        assert conflict.cafeteria_id == 3
        assert isinstance(failed, Failed)
        assert failed.reason == 'VOUCHER_NOT_FOUND'
        assert report.summary() == {'total': 3, 'synced': 1, 'conflicts': 1, 'errors': 1}
        assert report.has_conflicts
        assert SyncLogEntry.objects.filter(device_id='term-a').count() == 3

    def test_serialised_results(self, voucher):
        report = sync_batch(device_id='term-a', intents=[
            RedemptionIntent(local_id='a-1', voucher_code=voucher.code, cafeteria_id=1),
            RedemptionIntent(local_id='a-2', voucher_code='HPN-2026-9999', cafeteria_id=1),
        ])

        data = report.as_dict()
        assert data['results'][0]['status'] == 'synced'
        assert data['results'][0]['voucher_code'] == voucher.code
        assert 'server_timestamp' in data['results'][0]
        assert data['results'][1]['status'] == 'error'
        assert data['results'][1]['reason'] == 'VOUCHER_NOT_FOUND'

    def test_resubmitted_batch_is_idempotent(self, voucher):
        intents = [RedemptionIntent(local_id='a-1', voucher_code=voucher.code, cafeteria_id=1)]

        first = sync_batch(device_id='term-a', intents=intents)
        second = sync_batch(device_id='term-a', intents=intents)

        assert isinstance(second.results[0], Synced)
        assert first.results[0].redemption_id == second.results[0].redemption_id
        assert Redemption.objects.count() == 1

    def test_two_offline_terminals(self, voucher):
        """Both terminals redeemed the same voucher offline; the first to sync wins."""
        taken_at = timezone.now() - timedelta(minutes=30)

        report_a = sync_batch(device_id='term-a', intents=[
            RedemptionIntent(local_id='a-1', voucher_code=voucher.code, cafeteria_id=1, local_timestamp=taken_at),
        ])
        report_b = sync_batch(device_id='term-b', intents=[
            RedemptionIntent(local_id='b-1', voucher_code=voucher.code, cafeteria_id=2, local_timestamp=taken_at),
        ])

        assert isinstance(report_a.results[0], Synced)
        conflict = report_b.results[0]
        assert isinstance(conflict, Conflict)
        assert conflict.cafeteria_id == 1
        assert conflict.device_id == 'term-a'
        assert conflict.local_timestamp == taken_at
        assert Redemption.objects.get(voucher=voucher).local_id == 'a-1'

    def test_unexpected_error_does_not_abort_batch(self, issue):
        first, second = issue(quantity=2)
        real_redeem = redeem_voucher

        def flaky(**kwargs):
            if kwargs['local_id'] == 'a-1':
                raise RuntimeError('connection reset')
            return real_redeem(**kwargs)

        with patch('apps.vouchers.services.sync.redeem_voucher', side_effect=flaky):
            report = sync_batch(device_id='term-a', intents=[
                RedemptionIntent(local_id='a-1', voucher_code=first.code, cafeteria_id=1),
                RedemptionIntent(local_id='a-2', voucher_code=second.code, cafeteria_id=1),
            ])

        assert isinstance(report.results[0], Failed)
        assert report.results[0].reason == 'SERVER_ERROR'
        assert isinstance(report.results[1], Synced)

    def test_rejected_intent_does_not_block_batch(self, voucher):
        report = sync_batch(device_id='term-a', intents=[
            RejectedIntent(
                local_id='a-1',
                voucher_code='X' * 40,
                message='voucher_code: Ensure this field has no more than 32 characters.',
            ),
            RedemptionIntent(local_id='a-2', voucher_code=voucher.code, cafeteria_id=1),
        ])

        rejected, synced = report.results
        assert isinstance(rejected, Failed)
        assert rejected.reason == 'VALIDATION_ERROR'
        assert rejected.voucher_code == 'X' * 40
        assert isinstance(synced, Synced)
        assert Redemption.objects.get(voucher=voucher).local_id == 'a-2'

        entry = SyncLogEntry.objects.get(local_id='a-1')
        assert entry.result == 'error'
        assert entry.reason == 'VALIDATION_ERROR'
        assert entry.voucher_code == 'X' * 32

    def test_repeated_local_id_in_batch(self, issue):
        first, second = issue(quantity=2)

        report = sync_batch(device_id='term-a', intents=[
            RedemptionIntent(local_id='a-1', voucher_code=first.code, cafeteria_id=1),
            RedemptionIntent(local_id='a-1', voucher_code=second.code, cafeteria_id=1),
        ])

        assert isinstance(report.results[0], Synced)
        assert isinstance(report.results[1], Failed)
        assert report.results[1].reason == 'VALIDATION_ERROR'
        assert Voucher.objects.get(pk=second.pk).status == VoucherStatus.ACTIVE

    def test_batch_size_limit(self, voucher, settings):
        settings.SYNC_MAX_BATCH_SIZE = 1
        intents = [
            RedemptionIntent(local_id=f'a-{i}', voucher_code=voucher.code, cafeteria_id=1)
            for i in range(2)
        ]

        with pytest.raises(VoucherValidationError):
            sync_batch(device_id='term-a', intents=intents)

    def test_empty_batch(self, db):
        with pytest.raises(VoucherValidationError):
            sync_batch(device_id='term-a', intents=[])

    def test_history_and_stats(self, issue):
        first, second = issue(quantity=2)
        sync_batch(device_id='term-a', intents=[
            RedemptionIntent(local_id='a-1', voucher_code=first.code, cafeteria_id=1),
            RedemptionIntent(local_id='a-2', voucher_code=first.code, cafeteria_id=1),
        ])
        sync_batch(device_id='term-b', intents=[
            RedemptionIntent(local_id='b-1', voucher_code=second.code, cafeteria_id=1),
        ])

        history = list(get_sync_history(device_id='term-a'))
        assert [entry.local_id for entry in history] == ['a-2', 'a-1']

        stats = get_sync_stats(device_id='term-a')
        counts = {row['result']: row['count'] for row in stats}
        assert counts == {'synced': 1, 'conflict': 1}
        assert stats[0]['sync_date'] == timezone.localdate()


# =============================================================================
# Audit Trail Tests
# =============================================================================

@pytest.fixture
def audit_messages(caplog, monkeypatch):
    """Capture formatted messages sent to the audit logger."""
    monkeypatch.setattr(logging.getLogger('audit'), 'propagate', True)
    caplog.set_level(logging.INFO, logger='audit')

    def _messages(event):
        return [
            record.getMessage() for record in caplog.records
            if record.name == 'audit' and record.getMessage().startswith(event)
        ]
    return _messages


@pytest.mark.django_db
class TestAuditTrail:

    def test_issuance_entry_names_codes(self, issue, active_stay, audit_messages):
        first, second = issue(quantity=2)

        [message] = audit_messages('vouchers_issued')
        assert str(active_stay.id) in message
        assert f'codes={first.code},{second.code}' in message

    def test_redemption_entry_names_voucher_and_device(self, voucher, cafeteria_user, audit_messages):
        redeem_voucher(
            code=voucher.code,
            cafeteria_id=3,
            device_id='term-a',
            local_id='a-1',
            user=cafeteria_user,
        )

        [message] = audit_messages('voucher_redeemed')
        assert f'code={voucher.code}' in message
        assert 'cafeteria=3' in message
        assert 'device=term-a' in message
        assert 'local_id=a-1' in message
        assert f'user={cafeteria_user.id}' in message

    def test_cancellation_entry_names_voucher(self, voucher, audit_messages):
        cancel_voucher(code=voucher.code, reason='Guest checked out early')

        [message] = audit_messages('voucher_cancelled')
        assert f'code={voucher.code}' in message
        assert 'Guest checked out early' in message

    def test_sync_entry_carries_counts(self, voucher, audit_messages):
        sync_batch(device_id='term-a', intents=[
            RedemptionIntent(local_id='a-1', voucher_code=voucher.code, cafeteria_id=1),
            RedemptionIntent(local_id='a-2', voucher_code='HPN-2026-9999', cafeteria_id=1),
        ])

        [message] = audit_messages('sync_completed')
        assert message == 'sync_completed device=term-a total=2 synced=1 conflicts=0 errors=1'


# =============================================================================
# Concurrency Tests (Race Conditions)
# =============================================================================

class TestConcurrentRedemption(TransactionTestCase):
    """Real concurrent redemptions against the database."""

    def setUp(self):
        today = timezone.localdate()
        stay = Stay.objects.create(
            guest_name='Ana Torres',
            room_number='204',
            check_in=today,
            check_out=today + timedelta(days=2),
            status=StayStatus.ACTIVE,
        )
        self.voucher = issue_vouchers(
            stay_id=stay.id,
            quantity=1,
            valid_from=today,
            valid_until=today,
        )[0]

    def test_concurrent_redemptions_single_winner(self):
        results = []
        conflicts = []
        errors = []
        barrier = threading.Barrier(5)

        def redeem_from(device):
            try:
                barrier.wait()
                results.append(redeem_voucher(
                    code=self.voucher.code,
                    cafeteria_id=1,
                    device_id=device,
                    local_id=f'{device}-1',
                ))
            except AlreadyRedeemedError as e:
                conflicts.append(e)
            except Exception as e:
                errors.append(f"Unexpected error: {e}")
            finally:
                connection.close()

        threads = [
            threading.Thread(target=redeem_from, args=(f'term-{i}',))
            for i in range(5)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(results) == 1
        assert len(conflicts) == 4
        assert Redemption.objects.filter(voucher=self.voucher).count() == 1

        self.voucher.refresh_from_db()
        assert self.voucher.status == VoucherStatus.REDEEMED
