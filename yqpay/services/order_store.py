"""
Order access that hides the two physical layouts.

Orders live either as a row in ``orders`` or as one element of a theater's
``theater_orders.order_list``. Callers see a plain dict in both cases and
describe changes as dotted field paths ("payment.status"), which are applied
to that one order only. Writes are compare-and-swap on the row's ``version``
so concurrent verify / webhook / reconcile calls never lose each other's
updates and never touch sibling orders.
"""
import copy
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from yqpay.core.errors import StoreError
from yqpay.database.models import Order, OrderLocator, TheaterOrders, new_id

logger = logging.getLogger(__name__)

LAYOUT_STANDALONE = "standalone"
LAYOUT_ARRAY = "array"

MAX_WRITE_ATTEMPTS = 5

# dict key -> orders column
_FIELD_COLUMNS = {
    "theaterId": "theater_id",
    "orderNumber": "order_number",
    "source": "source",
    "orderType": "order_type",
    "customerInfo": "customer_info",
    "items": "items",
    "pricing": "pricing",
    "payment": "payment",
    "status": "status",
    "stockRecorded": "stock_recorded",
    "stockRecordedItems": "stock_recorded_items",
    "stockClaimedAt": "stock_claimed_at",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
}


@dataclass
class OrderRecord:
    data: Dict[str, Any]
    layout: str
    theater_id: str
    container_id: Optional[int] = None

    @property
    def id(self) -> str:
        return self.data["_id"]


class OrderConflict(Exception):
    """Another writer bumped the version between read and write"""


def _iso(value):
    return value.isoformat() if isinstance(value, datetime) else value


def as_datetime(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        return None


def _row_to_dict(row: Order) -> Dict[str, Any]:
    data = {"_id": row.id}
    for key, column in _FIELD_COLUMNS.items():
        data[key] = copy.deepcopy(getattr(row, column))
    data["items"] = data["items"] or []
    data["pricing"] = data["pricing"] or {}
    data["stockRecorded"] = bool(data["stockRecorded"])
    return data


def set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    target = doc
    for part in parts[:-1]:
        if not isinstance(target.get(part), dict):
            target[part] = {}
        target = target[part]
    target[parts[-1]] = value


def get_path(doc: Dict[str, Any], path: str, default=None):
    target = doc
    for part in path.split("."):
        if not isinstance(target, dict) or part not in target:
            return default
        target = target[part]
    return target


# ==========================
# Reads
# ==========================
def find_order(db: Session, order_id: str) -> Optional[OrderRecord]:
    """Standalone first, then the per-theater arrays (via the locator index)."""
    if not order_id:
        return None
    row = db.query(Order).filter(Order.id == str(order_id)).first()
    if row is not None:
        return OrderRecord(data=_row_to_dict(row), layout=LAYOUT_STANDALONE, theater_id=row.theater_id)

    locator = db.query(OrderLocator).filter(OrderLocator.order_id == str(order_id)).first()
    if locator is None:
        return None
    container = db.query(TheaterOrders).filter(TheaterOrders.id == locator.theater_orders_id).first()
    if container is None:
        logger.warning("Order locator for %s points at missing container %s", order_id, locator.theater_orders_id)
        return None
    for element in container.order_list or []:
        if str(element.get("_id")) == str(order_id):
            return OrderRecord(
                data=copy.deepcopy(element),
                layout=LAYOUT_ARRAY,
                theater_id=container.theater_id,
                container_id=container.id,
            )
    logger.warning("Order %s not present in container %s", order_id, container.id)
    return None


# ==========================
# Writes
# ==========================
def _write_standalone(db: Session, order_id: str, build: Callable) -> Optional[Dict[str, Any]]:
    row = db.query(Order).filter(Order.id == order_id).first()
    if row is None:
        return None
    db.refresh(row)
    expected_version = row.version
    current = _row_to_dict(row)
    updates = build(copy.deepcopy(current))
    if not updates:
        return None

    changed = copy.deepcopy(current)
    for path, value in updates.items():
        set_path(changed, path, value)

    values = {}
    for path in updates:
        top = path.split(".")[0]
        column = _FIELD_COLUMNS.get(top)
        if column is None:
            raise StoreError(f"Unknown order field: {top}")
        value = changed[top]
        values[column] = as_datetime(value) if column == "stock_claimed_at" else value
    values["updated_at"] = datetime.utcnow()
    values["version"] = expected_version + 1

    result = db.execute(
        update(Order)
        .where(Order.id == order_id, Order.version == expected_version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise OrderConflict(order_id)
    db.commit()
    changed["updatedAt"] = values["updated_at"]
    return changed


def _write_array(db: Session, container_id: int, order_id: str, build: Callable) -> Optional[Dict[str, Any]]:
    container = db.query(TheaterOrders).filter(TheaterOrders.id == container_id).first()
    if container is None:
        return None
    db.refresh(container)
    expected_version = container.version
    order_list = copy.deepcopy(container.order_list or [])
    index = next((i for i, o in enumerate(order_list) if str(o.get("_id")) == str(order_id)), None)
    if index is None:
        return None

    updates = build(copy.deepcopy(order_list[index]))
    if not updates:
        return None

    element = order_list[index]
    for path, value in updates.items():
        set_path(element, path, _iso(value))
    element["updatedAt"] = datetime.utcnow().isoformat()

    result = db.execute(
        update(TheaterOrders)
        .where(TheaterOrders.id == container_id, TheaterOrders.version == expected_version)
        .values(order_list=order_list, version=expected_version + 1, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise OrderConflict(order_id)
    db.commit()
    return element


def update_order(
    db: Session,
    record: OrderRecord,
    build: Callable[[Dict[str, Any]], Optional[Dict[str, Any]]],
) -> Optional[Dict[str, Any]]:
    """
    Apply dotted-path updates to one order.

    ``build`` receives a fresh copy of the order and returns the updates to
    apply, or None/{} to leave the order as is (this is where prior-state
    predicates live). Returns the order after the write, or None when
    nothing was written.
    """
    for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
        try:
            if record.layout == LAYOUT_ARRAY:
                return _write_array(db, record.container_id, record.id, build)
            return _write_standalone(db, record.id, build)
        except OrderConflict:
            logger.info("Order %s changed concurrently, retrying (%d/%d)", record.id, attempt, MAX_WRITE_ATTEMPTS)
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreError(f"Failed to update order {record.id}: {e}")
    raise StoreError(f"Order {record.id} kept changing; gave up after {MAX_WRITE_ATTEMPTS} attempts")


def set_fields(db: Session, record: OrderRecord, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    return update_order(db, record, lambda _order: dict(updates))


# ==========================
# Creation (used by the ordering surface and fixtures)
# ==========================
def add_order(db: Session, theater_id: str, data: Dict[str, Any], layout: str = LAYOUT_STANDALONE) -> OrderRecord:
    data = dict(data)
    order_id = str(data.pop("_id", None) or new_id())

    if layout == LAYOUT_STANDALONE:
        row = Order(id=order_id, theater_id=theater_id)
        for key, column in _FIELD_COLUMNS.items():
            if key in data and key != "theaterId":
                setattr(row, column, as_datetime(data[key]) if column in ("stock_claimed_at", "created_at", "updated_at") else data[key])
        db.add(row)
        db.commit()
        db.refresh(row)
        return OrderRecord(data=_row_to_dict(row), layout=LAYOUT_STANDALONE, theater_id=theater_id)

    now = datetime.utcnow().isoformat()
    element = {
        "_id": order_id,
        "theaterId": theater_id,
        "status": "pending",
        "items": [],
        "pricing": {},
        "stockRecorded": False,
        "createdAt": now,
        "updatedAt": now,
    }
    element.update({k: _iso(v) for k, v in data.items()})

    container = db.query(TheaterOrders).filter(TheaterOrders.theater_id == theater_id).first()
    if container is None:
        container = TheaterOrders(theater_id=theater_id, order_list=[], version=0)
        db.add(container)
        db.flush()
    container.order_list = list(container.order_list or []) + [element]
    container.version = (container.version or 0) + 1
    flag_modified(container, "order_list")
    db.add(OrderLocator(order_id=order_id, theater_orders_id=container.id))
    db.commit()
    return OrderRecord(data=copy.deepcopy(element), layout=LAYOUT_ARRAY, theater_id=theater_id, container_id=container.id)
