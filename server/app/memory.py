# server/app/memory.py
"""In-process courier store backing the offline client (`client.api_client.LocalCourierClient`).

Counter updates are serialised per courier with a lock, so allocations for one
courier never interleave while different couriers proceed in parallel.
"""
import logging
import threading
from typing import Dict, List, Optional

from .errors import CourierNotFound, CustomCourierError
from .models import Courier, new_id
from .utils import Allocation, ExpressRange, check_range, compute_allocation, resolve_range

logger = logging.getLogger(__name__)


class InMemoryCourierStore:

    def __init__(self):
        self._couriers: Dict[str, Courier] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, courier_id: str) -> threading.Lock:
        with self._registry_lock:
            if courier_id not in self._couriers:
                raise CourierNotFound()
            return self._locks[courier_id]

    def add(self, courier: Courier) -> Courier:
        if not courier.id:
            courier.id = new_id()
        if courier.current_tracking_number is None:
            courier.current_tracking_number = courier.starting_tracking_number or 0
        if courier.express_current_tracking_number is None:
            courier.express_current_tracking_number = courier.express_starting_tracking_number
        if courier.is_custom_courier is None:
            courier.is_custom_courier = False
        with self._registry_lock:
            self._couriers[courier.id] = courier
            self._locks[courier.id] = threading.Lock()
        return courier

    def get(self, courier_id: str) -> Courier:
        courier = self._couriers.get(courier_id)
        if courier is None:
            raise CourierNotFound()
        return courier

    def all(self) -> List[Courier]:
        with self._registry_lock:
            return list(self._couriers.values())

    def update(self, courier_id: str, **fields) -> Courier:
        with self._lock_for(courier_id):
            courier = self._couriers[courier_id]
            if "id" in fields:
                raise ValueError("courier id cannot be changed")
            for name, value in fields.items():
                if not hasattr(Courier, name):
                    raise AttributeError(f"unknown courier field {name!r}")
                setattr(courier, name, value)
            return courier

    def remove(self, courier_id: str) -> None:
        with self._registry_lock:
            if self._couriers.pop(courier_id, None) is None:
                raise CourierNotFound()
            self._locks.pop(courier_id, None)

    def increment_tracking_number(self, courier_id: str, is_express_mode: bool = False,
                                  allow_overflow: Optional[bool] = None) -> Allocation:
        with self._lock_for(courier_id):
            courier = self._couriers[courier_id]
            if courier.is_custom_courier:
                raise CustomCourierError()
            rng = resolve_range(courier, is_express_mode)
            allocation = check_range(courier_id, compute_allocation(rng.current, rng.end),
                                     is_express_mode, allow_overflow)
            if isinstance(rng, ExpressRange):
                courier.express_current_tracking_number = allocation.new_number
            else:
                courier.current_tracking_number = allocation.new_number
        logger.info("courier %s allocated %s in memory (express=%s)",
                    courier_id, allocation.new_number, is_express_mode)
        return allocation
