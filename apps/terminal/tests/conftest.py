import pytest
from datetime import timedelta
from django.utils import timezone

from apps.accounts.models import User, StaffRole
from apps.stays.models import Stay, StayStatus
from apps.terminal.services import LocalSyncTransport, SyncAgent, SyncTransport, TransportError
from apps.vouchers.services import issue_vouchers


class OfflineTransport(SyncTransport):
    """Transport whose server is never reachable."""

    def __init__(self, healthy=False):
        self.healthy = healthy
        self.batches = []

    def check_health(self):
        return self.healthy

    def get_voucher(self, code):
        raise TransportError("connection refused")

    def redeem(self, **kwargs):
        raise TransportError("connection refused")

    def sync_redemptions(self, *, device_id, intents):
        self.batches.append(intents)
        raise TransportError("connection reset by peer")


class ScriptedTransport(SyncTransport):
    """Transport answering sync batches with a fixed response."""

    def __init__(self, response):
        self.response = response
        self.batches = []

    def check_health(self):
        return True

    def sync_redemptions(self, *, device_id, intents):
        self.batches.append(intents)
        return self.response


@pytest.fixture
def today():
    return timezone.localdate()


@pytest.fixture
def cafeteria_user(db):
    return User.objects.create_user(
        email='cafeteria@hotel.test',
        password='TestPass123!',
        display_name='Cafeteria',
        role=StaffRole.CAFETERIA,
    )


@pytest.fixture
def active_stay(db, today):
    return Stay.objects.create(
        guest_name='Marta Ruiz',
        room_number='512',
        check_in=today - timedelta(days=1),
        check_out=today + timedelta(days=3),
        status=StayStatus.ACTIVE,
    )


@pytest.fixture
def vouchers(active_stay, today):
    """Two active vouchers valid from today."""
    return issue_vouchers(
        stay_id=active_stay.id,
        quantity=2,
        valid_from=today,
        valid_until=today + timedelta(days=2),
    )


@pytest.fixture
def voucher(vouchers):
    return vouchers[0]


@pytest.fixture
def agent(db, cafeteria_user):
    """Sync agent talking to the server services in-process."""
    return SyncAgent(
        transport=LocalSyncTransport(user=cafeteria_user),
        device_id='terminal-test',
        interval=60,
    )


@pytest.fixture
def offline_agent(db):
    """Agent whose server is unreachable (health check fails)."""
    return SyncAgent(transport=OfflineTransport(), device_id='terminal-test', interval=60)


@pytest.fixture
def flaky_agent(db):
    """Agent whose health check passes but whose batch upload fails."""
    return SyncAgent(transport=OfflineTransport(healthy=True), device_id='terminal-test', interval=60)


@pytest.fixture
def scripted_agent(db):
    """Return a helper building an agent whose server answers with ``response``."""
    def _build(response):
        return SyncAgent(transport=ScriptedTransport(response), device_id='terminal-test', interval=60)
    return _build
