"""Push reservation state to the downstream mirror stores.

The patient-record ("intake") store and the reservation mirror are
PostgREST-style HTTP APIs. They are copies for cheap reads elsewhere in the
clinic; nothing is ever read back from them here.
"""

import logging
from typing import Any

import httpx
from tenacity import before_sleep_log, retry, retry_if_exception, stop_after_attempt, wait_exponential

from clinic_booking.core import config

logger = logging.getLogger(__name__)


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in {429, 500, 502, 503, 504}
    return False


_retry_policy = retry(
    stop=stop_after_attempt(max(1, config.MIRROR_MAX_ATTEMPTS)),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    retry=retry_if_exception(_is_retryable),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


class MirrorClient:
    def __init__(
        self,
        base_url: str = config.MIRROR_BASE_URL,
        api_key: str = config.MIRROR_API_KEY,
        cache_invalidate_url: str = config.CACHE_INVALIDATE_URL,
        cache_invalidate_token: str = config.CACHE_INVALIDATE_TOKEN,
        timeout: float = config.MIRROR_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.cache_invalidate_url = cache_invalidate_url
        self.cache_invalidate_token = cache_invalidate_token
        self.timeout = timeout
        self.transport = transport

    @property
    def mirrors_configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    @property
    def cache_configured(self) -> bool:
        return bool(self.cache_invalidate_url and self.cache_invalidate_token)

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout, transport=self.transport)

    def _mirror_headers(self) -> dict[str, str]:
        return {
            'apikey': self.api_key,
            'Authorization': f'Bearer {self.api_key}',
        }

    @_retry_policy
    def upsert_by_patient(self, patient_id: str, fields: dict[str, Any]) -> None:
        """Write scheduling fields onto the patient's intake record, creating it if absent."""
        if not self.mirrors_configured:
            logger.warning('Mirror store not configured; skipping intake sync for %s', patient_id)
            return

        url = f'{self.base_url}/rest/v1/intake'
        with self._client() as client:
            response = client.get(url, params={'patient_id': f'eq.{patient_id}'}, headers=self._mirror_headers())
            response.raise_for_status()
            records = response.json()

            if records:
                record_id = records[0]['id']
                response = client.patch(url, params={'id': f'eq.{record_id}'}, json=fields, headers=self._mirror_headers())
            else:
                response = client.post(
                    url,
                    json={'patient_id': patient_id, **fields},
                    headers={**self._mirror_headers(), 'Prefer': 'return=minimal'},
                )
            response.raise_for_status()

        logger.info('Intake mirror updated for patient_id=%s', patient_id)

    @_retry_policy
    def upsert_reservation(self, fields: dict[str, Any]) -> None:
        if not self.mirrors_configured:
            logger.warning('Mirror store not configured; skipping reservation sync for %s', fields.get('reserve_id'))
            return

        with self._client() as client:
            response = client.post(
                f'{self.base_url}/rest/v1/reservations',
                json=fields,
                headers={**self._mirror_headers(), 'Prefer': 'resolution=merge-duplicates'},
            )
            response.raise_for_status()

        logger.info('Reservation mirror written: reserve_id=%s', fields.get('reserve_id'))

    @_retry_policy
    def invalidate(self, patient_id: str) -> None:
        if not patient_id:
            return
        if not self.cache_configured:
            logger.warning('Cache invalidation not configured; skipping for %s', patient_id)
            return

        with self._client() as client:
            response = client.post(
                self.cache_invalidate_url,
                json={'patient_id': patient_id},
                headers={'Authorization': f'Bearer {self.cache_invalidate_token}'},
            )
            response.raise_for_status()

        logger.info('Cache invalidated for patient_id=%s', patient_id)


def reservation_mirror_fields(
    reserve_id: str,
    patient_id: str,
    patient_name: str,
    date: str | None,
    time: str | None,
    status: str,
) -> dict[str, Any]:
    return {
        'reserve_id': reserve_id,
        'patient_id': patient_id,
        'patient_name': patient_name or None,
        'reserved_date': date or None,
        'reserved_time': time or None,
        'status': status,
        'note': None,
        'prescription_menu': None,
    }
