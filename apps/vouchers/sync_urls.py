from django.urls import path
from . import views

app_name = 'sync'

urlpatterns = [
    # POST /api/sync/redemptions/   - Upload offline redemption intents
    # GET  /api/sync/history/       - Sync log
    # GET  /api/sync/stats/         - Sync results per day
    path('redemptions/', views.sync_redemptions, name='redemptions'),
    path('history/', views.sync_history, name='history'),
    path('stats/', views.sync_stats, name='stats'),
]
