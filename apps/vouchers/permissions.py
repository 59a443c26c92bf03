"""
Role-based permission classes for voucher endpoints.

Reception issues and cancels vouchers; cafeteria operators validate, redeem
and sync. Administrators pass every check.
"""
from rest_framework.permissions import BasePermission

from apps.accounts.models import StaffRole


class HasStaffRole(BasePermission):
    """
    Permission to check the authenticated user's staff role.

    Usage:
        @permission_classes([IsAuthenticated, IsReception])
        def issue(request):
            ...
    """

    allowed_roles = ()
    message = 'Your role does not allow this operation.'

    def has_permission(self, request, view):
        user = request.user
        return bool(
            user
            and user.is_authenticated
            and user.has_role(*self.allowed_roles)
        )


class IsReception(HasStaffRole):
    allowed_roles = (StaffRole.RECEPTION,)
    message = 'Only reception staff can perform this operation.'


class IsCafeteria(HasStaffRole):
    allowed_roles = (StaffRole.CAFETERIA,)
    message = 'Only cafeteria staff can perform this operation.'
