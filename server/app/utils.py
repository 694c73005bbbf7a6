# server/app/utils.py
import logging
from typing import NamedTuple, Optional, Union
from sqlalchemy import update
from sqlalchemy.orm import Session

from . import config
from .db import SessionLocal
from .errors import CourierNotFound, CustomCourierError, ExpressRangeNotConfigured, RangeExhausted
from .models import Courier

logger = logging.getLogger(__name__)


class StandardRange(NamedTuple):
    current: int
    end: int
    prefix: str


class ExpressRange(NamedTuple):
    current: int
    end: int
    prefix: str


AllocationRange = Union[StandardRange, ExpressRange]


class Allocation(NamedTuple):
    new_number: int
    remaining_count: int
    is_low: bool

    def as_dict(self) -> dict:
        return {"newNumber": self.new_number, "remainingCount": self.remaining_count, "isLow": self.is_low}


def express_prefix_for(courier) -> str:
    if courier.express_prefix:
        return courier.express_prefix
    return f"{config.EXPRESS_PREFIX_FALLBACK}{courier.prefix or ''}"


def resolve_range(courier, is_express_mode: bool = False) -> AllocationRange:
    """Pick the counter range a courier allocates from in the given mode.

    Express mode on a courier without an express current/end pair raises
    ExpressRangeNotConfigured instead of defaulting the numbers.
    """
    if not is_express_mode:
        return StandardRange(courier.current_tracking_number, courier.end_tracking_number, courier.prefix or "")
    if courier.express_current_tracking_number is None or courier.express_end_tracking_number is None:
        raise ExpressRangeNotConfigured()
    return ExpressRange(courier.express_current_tracking_number,
                        courier.express_end_tracking_number,
                        express_prefix_for(courier))


def compute_allocation(current: int, end: int) -> Allocation:
    new_number = current + 1
    remaining = end - new_number
    return Allocation(new_number, remaining, remaining <= config.LOW_WATER_MARK)


def check_range(courier_id: str, allocation: Allocation, is_express_mode: bool,
                allow_overflow: Optional[bool] = None) -> Allocation:
    """Apply the end-of-range policy to a computed allocation."""
    if allow_overflow is None:
        allow_overflow = config.allow_range_overflow()
    mode = "express" if is_express_mode else "standard"
    if allocation.remaining_count < 0:
        if not allow_overflow:
            logger.error("courier %s %s range exhausted at %s", courier_id, mode, allocation.new_number)
            raise RangeExhausted()
        logger.warning("courier %s %s range overflow: issued %s, %s past end",
                       courier_id, mode, allocation.new_number, -allocation.remaining_count)
    elif allocation.is_low:
        logger.warning("courier %s %s range low: %s numbers remaining",
                       courier_id, mode, allocation.remaining_count)
    return allocation


def format_tracking_id(courier, new_number: int, is_express_mode: bool = False) -> str:
    prefix = express_prefix_for(courier) if is_express_mode else (courier.prefix or "")
    return f"{prefix}{new_number}" if prefix else str(new_number)


def load_allocatable_courier(db: Session, courier_id: str) -> Courier:
    courier = db.get(Courier, courier_id, with_for_update=True)
    if courier is None:
        raise CourierNotFound()
    if courier.is_custom_courier:
        raise CustomCourierError()
    return courier


def allocate_tracking_number(db: Session, courier_id: str, is_express_mode: bool = False,
                             allow_overflow: Optional[bool] = None) -> Allocation:
    """
    Advance one counter of a courier inside the caller's transaction.
    The increment is a single UPDATE ... RETURNING so concurrent callers
    never read the same value; errors raised here must roll the transaction back.
    """
    courier = load_allocatable_courier(db, courier_id)
    rng = resolve_range(courier, is_express_mode)

    column = (Courier.express_current_tracking_number if isinstance(rng, ExpressRange)
              else Courier.current_tracking_number)
    stmt = (update(Courier)
            .where(Courier.id == courier_id)
            .values({column: column + 1})
            .returning(column)
            .execution_options(synchronize_session=False))
    new_number = db.execute(stmt).scalar_one()

    allocation = compute_allocation(new_number - 1, rng.end)
    check_range(courier_id, allocation, is_express_mode, allow_overflow)
    logger.info("courier %s allocated %s (%s remaining, express=%s)",
                courier_id, allocation.new_number, allocation.remaining_count, is_express_mode)
    return allocation


def next_tracking_number_atomic(courier_id: str, is_express_mode: bool = False,
                                allow_overflow: Optional[bool] = None) -> Allocation:
    """Allocate one tracking number as a standalone unit of work.

    The number is committed before this returns; any allocation error
    leaves the courier's counters as they were.
    """
    db = SessionLocal()
    try:
        with db.begin():
            allocation = allocate_tracking_number(db, courier_id, is_express_mode, allow_overflow)
            # commit happens at context exit
        return allocation
    finally:
        db.close()
