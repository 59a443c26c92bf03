import pytest
from datetime import timedelta
from django.utils import timezone
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import RefreshToken

from apps.accounts.models import User, StaffRole
from apps.stays.models import Stay, StayStatus
from apps.vouchers.services import issue_vouchers


def _client_for(user):
    client = APIClient()
    refresh = RefreshToken.for_user(user)
    client.credentials(HTTP_AUTHORIZATION=f'Bearer {refresh.access_token}')
    return client


@pytest.fixture
def today():
    return timezone.localdate()


@pytest.fixture
def reception_user(db):
    """Create and return a reception staff member."""
    return User.objects.create_user(
        email='reception@hotel.test',
        password='TestPass123!',
        display_name='Front Desk',
        role=StaffRole.RECEPTION,
    )


@pytest.fixture
def cafeteria_user(db):
    """Create and return a cafeteria operator."""
    return User.objects.create_user(
        email='cafeteria@hotel.test',
        password='TestPass123!',
        display_name='Cafeteria',
        role=StaffRole.CAFETERIA,
    )


@pytest.fixture
def admin_user(db):
    return User.objects.create_user(
        email='admin@hotel.test',
        password='TestPass123!',
        role=StaffRole.ADMIN,
    )


@pytest.fixture
def reception_client(reception_user):
    return _client_for(reception_user)


@pytest.fixture
def cafeteria_client(cafeteria_user):
    return _client_for(cafeteria_user)


@pytest.fixture
def admin_client(admin_user):
    return _client_for(admin_user)


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def active_stay(db, today):
    """Active stay from yesterday until four days from now."""
    return Stay.objects.create(
        guest_name='Ana Torres',
        room_number='204',
        check_in=today - timedelta(days=1),
        check_out=today + timedelta(days=4),
        status=StayStatus.ACTIVE,
    )


@pytest.fixture
def completed_stay(db, today):
    return Stay.objects.create(
        guest_name='Luis Peña',
        room_number='310',
        check_in=today - timedelta(days=5),
        check_out=today - timedelta(days=1),
        status=StayStatus.COMPLETED,
    )


@pytest.fixture
def issue(active_stay, today, reception_user):
    """Return a helper issuing vouchers for the active stay."""
    def _issue(quantity=1, valid_from=None, valid_until=None):
        return issue_vouchers(
            stay_id=active_stay.id,
            quantity=quantity,
            valid_from=valid_from or today,
            valid_until=valid_until or today + timedelta(days=2),
            issued_by=reception_user,
        )
    return _issue


@pytest.fixture
def voucher(issue):
    """A single active voucher valid from today for three days."""
    return issue()[0]
