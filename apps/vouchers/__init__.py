"""
Vouchers App - Breakfast Voucher Trust and Redemption

This app issues signed single-use breakfast vouchers for guest stays and
guarantees each one is redeemed at most once, even when cafeterias redeem
concurrently or upload redemptions recorded while offline.

Key Features:
- Batch issuance with per-year sequential codes (HPN-2026-0001)
- Ed25519 signatures and a compact QR payload terminals can verify offline
- Voucher state machine: active -> redeemed | cancelled | expired
- Lazy expiry on first use after the validity window
- Idempotent redemption keyed by the terminal's local_id
- Batch reconciliation of offline redemptions with per-item outcomes

Architecture:
- Models: Voucher, VoucherSequence, Redemption, SyncLogEntry
- Services: issuance, validation, redemption, cancellation, sync
- Views: function-based DRF handlers, one per operation
- Permissions: role checks (reception, cafeteria, admin)
- Exceptions: domain exception hierarchy with error codes
"""
