# client/api_client.py
import logging
import requests

from server.app.errors import CourierError
from server.app.utils import format_tracking_id

logger = logging.getLogger(__name__)


class CourierClientError(Exception):
    def __init__(self, status_code, message):
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message


class CourierClient:
    """Thin HTTP client for the courier server used by slip-generation front ends."""

    def __init__(self, base_url, timeout=5, session=None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method, path, **kwargs):
        url = f"{self.base_url}{path}"
        try:
            r = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.error("request to %s failed: %s", url, e)
            raise CourierClientError(None, str(e)) from e
        if not r.ok:
            try:
                message = r.json().get('error', r.text)
            except ValueError:
                message = r.text
            raise CourierClientError(r.status_code, message)
        return r.json()

    def list_couriers(self):
        return self._request('GET', '/api/couriers')

    def increment_tracking_number(self, courier_id, is_express_mode=False):
        return self._request('POST', f'/api/couriers/{courier_id}/increment-tracking-number',
                             json={'isExpressMode': is_express_mode})

    def generate_slip(self, payload):
        slip = self._request('POST', '/api/slips', json=payload)
        warning = slip.get('trackingWarning')
        if warning and warning.get('isLow'):
            logger.warning("courier %s running low: %s tracking numbers left",
                           slip.get('courierName'), warning.get('remainingCount'))
        return slip


class LocalCourierClient:
    """Same calls as CourierClient, served from an InMemoryCourierStore when no server is reachable."""

    def __init__(self, store):
        self.store = store

    def _call(self, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except CourierError as e:
            raise CourierClientError(e.status_code, e.message) from e

    def list_couriers(self):
        return [{'id': c.id, 'name': c.name, 'prefix': c.prefix,
                 'currentTrackingNumber': c.current_tracking_number,
                 'endTrackingNumber': c.end_tracking_number,
                 'isCustomCourier': c.is_custom_courier} for c in self.store.all()]

    def increment_tracking_number(self, courier_id, is_express_mode=False):
        allocation = self._call(self.store.increment_tracking_number, courier_id, is_express_mode)
        return allocation.as_dict()

    def generate_slip(self, payload):
        courier = self._call(self.store.get, payload.get('courierId'))
        is_express = bool(payload.get('isExpressMode'))
        allocation = self._call(self.store.increment_tracking_number, courier.id, is_express)
        slip = dict(payload)
        slip.update({
            'trackingId': format_tracking_id(courier, allocation.new_number, is_express),
            'courierName': courier.name,
            'isExpressMode': is_express,
            'trackingWarning': {'isLow': allocation.is_low, 'remainingCount': allocation.remaining_count},
        })
        if allocation.is_low:
            logger.warning("courier %s running low: %s tracking numbers left",
                           courier.name, allocation.remaining_count)
        return slip
