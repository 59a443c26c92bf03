"""
How a terminal talks to the voucher server.

``HttpSyncTransport`` calls the REST API with requests. ``LocalSyncTransport``
calls the server services in-process, for terminals that share the server's
database and for tests.
"""

import logging
from typing import List, Optional

import requests
from django.conf import settings
from django.utils.dateparse import parse_datetime

from .exceptions import RemoteRejectionError, TransportError

logger = logging.getLogger(__name__)


class SyncTransport:
    """Operations a terminal needs from the server."""

    def check_health(self) -> bool:
        raise NotImplementedError

    def get_voucher(self, code: str) -> dict:
        raise NotImplementedError

    def redeem(self, *, code, cafeteria_id, device_id, local_id, local_timestamp=None, signature=None) -> dict:
        raise NotImplementedError

    def sync_redemptions(self, *, device_id: str, intents: List[dict]) -> dict:
        raise NotImplementedError


class HttpSyncTransport(SyncTransport):
    """
    REST client for the voucher API.

    Connection failures, timeouts and 5xx answers raise TransportError, so
    the caller can queue work for later. 4xx answers raise
    RemoteRejectionError carrying the server's error code.
    """

    def __init__(self, base_url: str, *, token: str = '', timeout: float = 10, session=None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({'Content-Type': 'application/json'})
        if token:
            self.session.headers.update({'Authorization': f'Bearer {token}'})

    @classmethod
    def from_settings(cls) -> 'HttpSyncTransport':
        return cls(
            settings.TERMINAL_API_URL,
            token=settings.TERMINAL_API_TOKEN,
            timeout=settings.TERMINAL_HTTP_TIMEOUT,
        )

    def _request(self, method: str, path: str, payload: Optional[dict] = None) -> dict:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("HTTP error calling %s %s: %s", method, path, exc)
            raise TransportError(str(exc)) from exc

        if resp.status_code >= 500:
            logger.warning("Server error %s on %s: %s", resp.status_code, path, resp.text[:200])
            raise TransportError(f"Server error {resp.status_code}")

        try:
            body = resp.json()
        except ValueError:
            raise TransportError(f"Bad JSON response from {path}: {resp.text[:200]}")

        if resp.status_code >= 400:
            error = body if isinstance(body, dict) else {}
            raise RemoteRejectionError(
                error.get('code', f"HTTP_{resp.status_code}"),
                error.get('error') or resp.text[:200],
                status_code=resp.status_code,
                **error.get('details', {}),
            )

        return body

    def check_health(self) -> bool:
        try:
            resp = self.session.get(f"{self.base_url}/api/health/", timeout=self.timeout)
        except requests.RequestException:
            return False
        return resp.status_code == 200

    def get_voucher(self, code: str) -> dict:
        return self._request('GET', f"/api/vouchers/{code}/")

    def redeem(self, *, code, cafeteria_id, device_id, local_id, local_timestamp=None, signature=None) -> dict:
        payload = {
            'code': code,
            'cafeteria_id': cafeteria_id,
            'device_id': device_id,
            'local_id': local_id,
        }
        if local_timestamp:
            payload['local_timestamp'] = local_timestamp.isoformat()
        if signature:
            payload['signature'] = signature
        return self._request('POST', '/api/vouchers/redeem/', payload)

    def sync_redemptions(self, *, device_id: str, intents: List[dict]) -> dict:
        return self._request('POST', '/api/sync/redemptions/', {
            'device_id': device_id,
            'intents': intents,
        })


class LocalSyncTransport(SyncTransport):
    """Calls the voucher services directly instead of going over HTTP."""

    def __init__(self, user=None):
        self.user = user

    def check_health(self) -> bool:
        return True

    def get_voucher(self, code: str) -> dict:
        from apps.vouchers.serializers import VoucherSerializer
        from apps.vouchers.services import VoucherServiceError, get_voucher_by_code

        try:
            voucher = get_voucher_by_code(code=code)
        except VoucherServiceError as exc:
            raise RemoteRejectionError(exc.code, str(exc), status_code=exc.status_code, **exc.details)
        return VoucherSerializer(voucher).data

    def redeem(self, *, code, cafeteria_id, device_id, local_id, local_timestamp=None, signature=None) -> dict:
        from apps.vouchers.serializers import RedemptionSerializer
        from apps.vouchers.services import VoucherServiceError, redeem_voucher

        try:
            redemption = redeem_voucher(
                code=code,
                signature=signature,
                cafeteria_id=cafeteria_id,
                device_id=device_id,
                local_id=local_id,
                local_timestamp=local_timestamp,
                user=self.user,
            )
        except VoucherServiceError as exc:
            raise RemoteRejectionError(exc.code, str(exc), status_code=exc.status_code, **exc.details)
        return {'success': True, 'redemption': RedemptionSerializer(redemption).data}

    def sync_redemptions(self, *, device_id: str, intents: List[dict]) -> dict:
        from apps.vouchers.services import RedemptionIntent, VoucherServiceError, sync_batch

        batch = [
            RedemptionIntent(
                local_id=item['local_id'],
                voucher_code=item['voucher_code'],
                cafeteria_id=item['cafeteria_id'],
                local_timestamp=parse_datetime(item['local_timestamp']) if item.get('local_timestamp') else None,
                signature=item.get('signature'),
            )
            for item in intents
        ]
        try:
            report = sync_batch(device_id=device_id, intents=batch, user=self.user)
        except VoucherServiceError as exc:
            raise RemoteRejectionError(exc.code, str(exc), status_code=exc.status_code, **exc.details)
        return report.as_dict()
