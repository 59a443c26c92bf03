from django.urls import path
from . import views

app_name = 'vouchers'

urlpatterns = [
    # POST /api/vouchers/                  - Issue vouchers (reception)
    # POST /api/vouchers/validate/         - Validate code or QR payload (cafeteria)
    # POST /api/vouchers/redeem/           - Redeem (cafeteria)
    # GET  /api/vouchers/{code}/           - Voucher detail
    # POST /api/vouchers/{code}/cancel/    - Cancel (reception)
    path('', views.issue, name='issue'),
    path('validate/', views.validate, name='validate'),
    path('redeem/', views.redeem, name='redeem'),
    path('<str:code>/', views.voucher_detail, name='detail'),
    path('<str:code>/cancel/', views.cancel, name='cancel'),
]
