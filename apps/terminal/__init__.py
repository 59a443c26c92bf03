"""
Terminal App - Offline-First Cafeteria Terminal

Runs on the cafeteria device. Redeems vouchers online when the server is
reachable and queues them locally when it is not, then reconciles the queue
with the server in the background.

Key Features:
- Offline QR verification with the public signing key
- Durable queue of pending redemptions with jittered exponential backoff
- Single-flight background sync agent (timer + connectivity trigger)
- Conflict records for offline redemptions the server refused
- Operator conflict resolution (accept server, regenerate, dismiss)
- Cached voucher lookups for offline display

Usage:
    python manage.py terminal_sync --once
    python manage.py terminal_sync          # keep syncing until interrupted
"""
