# server/app/api.py
import csv
import io
import logging
from datetime import datetime, timezone
from typing import List, Optional

import pandas as pd
from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .db import SessionLocal, init_db
from .errors import CourierError, CourierNotFound
from .models import AuditLog, Courier, CourierSlip, Customer, ExpressModeSetting, SenderAddress
from .utils import allocate_tracking_number, format_tracking_id, next_tracking_number_atomic

logger = logging.getLogger(__name__)

app = FastAPI(title="CourierServer API")


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(CourierError)
async def courier_error_handler(request: Request, exc: CourierError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


# malformed requests are 400 so 422 stays specific to unconfigured express ranges
@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
        message = f"{field}: {first.get('msg')}" if field else first.get("msg", message)
    return JSONResponse(status_code=400, content={"error": message})


# Startup: init DB
@app.on_event("startup")
def on_startup():
    init_db()
    db = SessionLocal()
    try:
        get_express_setting(db)
        db.commit()
    finally:
        db.close()


def server_error(exc: Exception) -> HTTPException:
    logger.exception("storage error: %s", exc)
    return HTTPException(status_code=500, detail="Server error")


def write_audit(db, entity: str, entity_id, action: str, user: Optional[str], details: str):
    # best-effort: never fail the request because the audit row failed
    try:
        db.add(AuditLog(entity=entity, entity_id=str(entity_id), action=action,
                        user=user or "system", details=details))
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.warning("audit write failed for %s %s %s", entity, entity_id, action, exc_info=True)


def iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def camel(name: str) -> str:
    first, *rest = name.split("_")
    return first + "".join(word.title() for word in rest)


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=camel, populate_by_name=True)


# ---------------------------
# Couriers
# ---------------------------
class Charges(ApiModel):
    air: Optional[float] = None
    surface: Optional[float] = None


class CourierIn(ApiModel):
    name: str
    prefix: Optional[str] = None
    starting_tracking_number: int = 0
    current_tracking_number: Optional[int] = None
    end_tracking_number: int = 0
    charges: Optional[Charges] = None
    is_custom_courier: bool = False
    default_shipment_method: Optional[str] = None
    default_print_type: Optional[str] = None
    express_prefix: Optional[str] = None
    express_starting_tracking_number: Optional[int] = None
    express_current_tracking_number: Optional[int] = None
    express_end_tracking_number: Optional[int] = None
    express_charges: Optional[Charges] = None


class CourierPatch(ApiModel):
    name: Optional[str] = None
    prefix: Optional[str] = None
    starting_tracking_number: Optional[int] = None
    current_tracking_number: Optional[int] = None
    end_tracking_number: Optional[int] = None
    charges: Optional[Charges] = None
    is_custom_courier: Optional[bool] = None
    default_shipment_method: Optional[str] = None
    default_print_type: Optional[str] = None
    express_prefix: Optional[str] = None
    express_starting_tracking_number: Optional[int] = None
    express_current_tracking_number: Optional[int] = None
    express_end_tracking_number: Optional[int] = None
    express_charges: Optional[Charges] = None

    # may be omitted, but never cleared: the columns are NOT NULL
    @field_validator("name", "starting_tracking_number", "end_tracking_number", "is_custom_courier")
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError("may not be null")
        return value


class IncrementIn(ApiModel):
    is_express_mode: bool = False


def courier_to_dict(c: Courier) -> dict:
    express_charges = None
    if c.express_air_charges is not None or c.express_surface_charges is not None:
        express_charges = {"air": c.express_air_charges, "surface": c.express_surface_charges}
    return {
        "id": c.id,
        "name": c.name,
        "prefix": c.prefix,
        "startingTrackingNumber": c.starting_tracking_number,
        "currentTrackingNumber": c.current_tracking_number,
        "endTrackingNumber": c.end_tracking_number,
        "charges": {"air": c.air_charges, "surface": c.surface_charges},
        "isCustomCourier": c.is_custom_courier,
        "defaultShipmentMethod": c.default_shipment_method,
        "defaultPrintType": c.default_print_type,
        "expressPrefix": c.express_prefix,
        "expressStartingTrackingNumber": c.express_starting_tracking_number,
        "expressCurrentTrackingNumber": c.express_current_tracking_number,
        "expressEndTrackingNumber": c.express_end_tracking_number,
        "expressCharges": express_charges,
    }


def apply_courier_fields(c: Courier, fields: dict):
    charges = fields.pop("charges", None)
    express_charges = fields.pop("express_charges", None)
    for name, value in fields.items():
        setattr(c, name, value)
    if charges is not None:
        c.air_charges = charges.get("air")
        c.surface_charges = charges.get("surface")
    if express_charges is not None:
        c.express_air_charges = express_charges.get("air")
        c.express_surface_charges = express_charges.get("surface")
    # a range without a current value starts at its starting number
    if c.current_tracking_number is None:
        c.current_tracking_number = c.starting_tracking_number or 0
    if c.express_current_tracking_number is None and c.express_starting_tracking_number is not None:
        c.express_current_tracking_number = c.express_starting_tracking_number


@app.get("/api/couriers")
def list_couriers():
    db = SessionLocal()
    try:
        rows = db.query(Courier).order_by(Courier.name).all()
        return [courier_to_dict(c) for c in rows]
    except SQLAlchemyError as e:
        raise server_error(e)
    finally:
        db.close()


@app.get("/api/couriers/{courier_id}")
def get_courier(courier_id: str):
    db = SessionLocal()
    try:
        c = db.get(Courier, courier_id)
        if not c:
            raise CourierNotFound()
        return courier_to_dict(c)
    except SQLAlchemyError as e:
        raise server_error(e)
    finally:
        db.close()


@app.post("/api/couriers", status_code=201)
def create_courier(body: CourierIn):
    db = SessionLocal()
    try:
        c = Courier()
        apply_courier_fields(c, body.model_dump())
        db.add(c)
        db.commit()
        db.refresh(c)
        logger.info("courier %s (%s) created", c.id, c.name)
        write_audit(db, "courier", c.id, "create", None, f"name={c.name}")
        return courier_to_dict(c)
    except SQLAlchemyError as e:
        db.rollback()
        raise server_error(e)
    finally:
        db.close()


@app.patch("/api/couriers/{courier_id}")
def update_courier(courier_id: str, body: CourierPatch):
    db = SessionLocal()
    try:
        c = db.get(Courier, courier_id)
        if not c:
            raise CourierNotFound()
        fields = body.model_dump(exclude_unset=True)
        if not fields:
            return courier_to_dict(c)
        apply_courier_fields(c, fields)
        db.commit()
        db.refresh(c)
        write_audit(db, "courier", c.id, "update", None, f"fields={','.join(sorted(fields))}")
        return courier_to_dict(c)
    except SQLAlchemyError as e:
        db.rollback()
        raise server_error(e)
    finally:
        db.close()


@app.delete("/api/couriers/{courier_id}")
def delete_courier(courier_id: str):
    db = SessionLocal()
    try:
        c = db.get(Courier, courier_id)
        if not c:
            raise CourierNotFound()
        name = c.name
        db.delete(c)
        db.commit()
        write_audit(db, "courier", courier_id, "delete", None, f"name={name}")
        return {"message": "Courier deleted successfully"}
    except SQLAlchemyError as e:
        db.rollback()
        raise server_error(e)
    finally:
        db.close()


@app.post("/api/couriers/{courier_id}/increment-tracking-number")
def increment_tracking_number(courier_id: str, body: Optional[IncrementIn] = None):
    is_express_mode = body.is_express_mode if body else False
    try:
        allocation = next_tracking_number_atomic(courier_id, is_express_mode)
    except SQLAlchemyError as e:
        raise server_error(e)

    db = SessionLocal()
    try:
        write_audit(db, "courier", courier_id, "allocate", None,
                    f"number={allocation.new_number}, express={is_express_mode}")
    finally:
        db.close()
    return allocation.as_dict()


# ---------------------------
# Customers and sender addresses
# ---------------------------
class AddressIn(ApiModel):
    address_line1: Optional[str] = None
    address_line2: Optional[str] = None
    landmark: Optional[str] = None
    city: Optional[str] = None
    district: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None


class CustomerIn(ApiModel):
    name: str
    email: Optional[str] = None
    mobile: Optional[str] = None
    mobile2: Optional[str] = None
    address: Optional[AddressIn] = None
    preferred_courier: Optional[str] = None
    default_to_pay_shipping: bool = False
    notes: Optional[str] = None


class CustomerPatch(ApiModel):
    name: Optional[str] = None
    email: Optional[str] = None
    mobile: Optional[str] = None
    mobile2: Optional[str] = None
    address: Optional[AddressIn] = None
    preferred_courier: Optional[str] = None
    default_to_pay_shipping: Optional[bool] = None
    notes: Optional[str] = None

    @field_validator("name", "default_to_pay_shipping")
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError("may not be null")
        return value


class SenderAddressIn(ApiModel):
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    mobile: Optional[str] = None
    mobile2: Optional[str] = None
    gst_number: Optional[str] = None
    address: Optional[AddressIn] = None
    is_default: bool = False


class SenderAddressPatch(ApiModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    mobile: Optional[str] = None
    mobile2: Optional[str] = None
    gst_number: Optional[str] = None
    address: Optional[AddressIn] = None
    is_default: Optional[bool] = None

    @field_validator("name", "is_default")
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError("may not be null")
        return value


ADDRESS_FIELDS = ("address_line1", "address_line2", "landmark", "city", "district", "state", "pincode")


def apply_party_fields(row, fields: dict):
    address = fields.pop("address", None)
    for name, value in fields.items():
        setattr(row, name, value)
    if address is not None:
        for name in ADDRESS_FIELDS:
            # customers carry no district
            if name in address and hasattr(row, name):
                setattr(row, name, address[name])


def address_to_dict(row) -> dict:
    return {camel(name): getattr(row, name) for name in ADDRESS_FIELDS if hasattr(row, name)}


def format_address(row) -> str:
    """One-line address as printed on slips."""
    district = getattr(row, "district", None)
    locality = ", ".join(p for p in (row.city, district, row.state) if p)
    parts = [row.address_line1, row.address_line2,
             f"Near {row.landmark}" if row.landmark else None,
             locality, row.pincode]
    return ", ".join(p for p in parts if p)


def format_mobiles(mobile: Optional[str], mobile2: Optional[str]) -> Optional[str]:
    if mobile and mobile2:
        return f"{mobile}/{mobile2}"
    return mobile or mobile2


def customer_to_dict(c: Customer) -> dict:
    return {
        "id": c.id,
        "name": c.name,
        "email": c.email,
        "mobile": c.mobile,
        "mobile2": c.mobile2,
        "address": address_to_dict(c),
        "preferredCourier": c.preferred_courier,
        "defaultToPayShipping": c.default_to_pay_shipping,
        "notes": c.notes,
    }


def sender_address_to_dict(s: SenderAddress) -> dict:
    return {
        "id": s.id,
        "name": s.name,
        "email": s.email,
        "phone": s.phone,
        "mobile": s.mobile,
        "mobile2": s.mobile2,
        "gstNumber": s.gst_number,
        "address": address_to_dict(s),
        "isDefault": s.is_default,
    }


@app.get("/api/customers")
def list_customers(q: Optional[str] = None, limit: int = 200):
    db = SessionLocal()
    try:
        query = db.query(Customer)
        if q:
            pattern = f"%{q}%"
            query = query.filter(or_(Customer.name.ilike(pattern), Customer.mobile.like(pattern)))
        rows = query.order_by(Customer.name).limit(limit).all()
        return [customer_to_dict(c) for c in rows]
    except SQLAlchemyError as e:
        raise server_error(e)
    finally:
        db.close()


@app.get("/api/customers/{customer_id}")
def get_customer(customer_id: str):
    db = SessionLocal()
    try:
        c = db.get(Customer, customer_id)
        if not c:
            raise HTTPException(status_code=404, detail="Customer not found")
        return customer_to_dict(c)
    except SQLAlchemyError as e:
        raise server_error(e)
    finally:
        db.close()


@app.post("/api/customers", status_code=201)
def create_customer(body: CustomerIn):
    db = SessionLocal()
    try:
        c = Customer()
        apply_party_fields(c, body.model_dump())
        db.add(c)
        db.commit()
        db.refresh(c)
        write_audit(db, "customer", c.id, "create", None, f"name={c.name}")
        return customer_to_dict(c)
    except SQLAlchemyError as e:
        db.rollback()
        raise server_error(e)
    finally:
        db.close()


@app.patch("/api/customers/{customer_id}")
def update_customer(customer_id: str, body: CustomerPatch):
    db = SessionLocal()
    try:
        c = db.get(Customer, customer_id)
        if not c:
            raise HTTPException(status_code=404, detail="Customer not found")
        fields = body.model_dump(exclude_unset=True)
        if fields:
            apply_party_fields(c, fields)
            db.commit()
            db.refresh(c)
            write_audit(db, "customer", c.id, "update", None, f"fields={','.join(sorted(fields))}")
        return customer_to_dict(c)
    except SQLAlchemyError as e:
        db.rollback()
        raise server_error(e)
    finally:
        db.close()


@app.delete("/api/customers/{customer_id}")
def delete_customer(customer_id: str):
    db = SessionLocal()
    try:
        c = db.get(Customer, customer_id)
        if not c:
            raise HTTPException(status_code=404, detail="Customer not found")
        db.delete(c)
        db.commit()
        write_audit(db, "customer", customer_id, "delete", None, "")
        return {"message": "Customer deleted successfully"}
    except SQLAlchemyError as e:
        db.rollback()
        raise server_error(e)
    finally:
        db.close()


def clear_default_sender(db, keep_id: Optional[str] = None):
    q = db.query(SenderAddress).filter(SenderAddress.is_default.is_(True))
    if keep_id:
        q = q.filter(SenderAddress.id != keep_id)
    q.update({SenderAddress.is_default: False}, synchronize_session=False)


@app.get("/api/sender-addresses")
def list_sender_addresses():
    db = SessionLocal()
    try:
        rows = db.query(SenderAddress).order_by(SenderAddress.name).all()
        return [sender_address_to_dict(s) for s in rows]
    except SQLAlchemyError as e:
        raise server_error(e)
    finally:
        db.close()


@app.get("/api/sender-addresses/{address_id}")
def get_sender_address(address_id: str):
    db = SessionLocal()
    try:
        s = db.get(SenderAddress, address_id)
        if not s:
            raise HTTPException(status_code=404, detail="Sender address not found")
        return sender_address_to_dict(s)
    except SQLAlchemyError as e:
        raise server_error(e)
    finally:
        db.close()


@app.post("/api/sender-addresses", status_code=201)
def create_sender_address(body: SenderAddressIn):
    db = SessionLocal()
    try:
        fields = body.model_dump()
        if fields["is_default"]:
            clear_default_sender(db)
        elif db.query(SenderAddress).count() == 0:
            # the first address becomes the default
            fields["is_default"] = True
        s = SenderAddress()
        apply_party_fields(s, fields)
        db.add(s)
        db.commit()
        db.refresh(s)
        write_audit(db, "sender_address", s.id, "create", None, f"name={s.name}, default={s.is_default}")
        return sender_address_to_dict(s)
    except SQLAlchemyError as e:
        db.rollback()
        raise server_error(e)
    finally:
        db.close()


@app.patch("/api/sender-addresses/{address_id}")
def update_sender_address(address_id: str, body: SenderAddressPatch):
    db = SessionLocal()
    try:
        s = db.get(SenderAddress, address_id)
        if not s:
            raise HTTPException(status_code=404, detail="Sender address not found")
        fields = body.model_dump(exclude_unset=True)
        if fields:
            if fields.get("is_default"):
                clear_default_sender(db, keep_id=address_id)
            apply_party_fields(s, fields)
            db.commit()
            db.refresh(s)
            write_audit(db, "sender_address", s.id, "update", None, f"fields={','.join(sorted(fields))}")
        return sender_address_to_dict(s)
    except SQLAlchemyError as e:
        db.rollback()
        raise server_error(e)
    finally:
        db.close()


@app.delete("/api/sender-addresses/{address_id}")
def delete_sender_address(address_id: str):
    db = SessionLocal()
    try:
        s = db.get(SenderAddress, address_id)
        if not s:
            raise HTTPException(status_code=404, detail="Sender address not found")
        if db.query(SenderAddress).count() == 1:
            raise HTTPException(status_code=400, detail="Cannot delete the only sender address")
        if s.is_default:
            successor = (db.query(SenderAddress)
                         .filter(SenderAddress.id != address_id)
                         .order_by(SenderAddress.name)
                         .first())
            successor.is_default = True
        db.delete(s)
        db.commit()
        write_audit(db, "sender_address", address_id, "delete", None, "")
        return {"message": "Sender address deleted successfully"}
    except SQLAlchemyError as e:
        db.rollback()
        raise server_error(e)
    finally:
        db.close()



# ---------------------------
# Express mode
# ---------------------------
class ExpressModeIn(ApiModel):
    is_enabled: bool
    updated_by: Optional[str] = None


def get_express_setting(db) -> ExpressModeSetting:
    setting = db.get(ExpressModeSetting, 1)
    if setting is None:
        setting = ExpressModeSetting(id=1, is_enabled=False)
        db.add(setting)
        db.flush()
    return setting


def express_setting_to_dict(s: ExpressModeSetting) -> dict:
    return {"isEnabled": s.is_enabled, "updatedBy": s.updated_by, "updatedAt": iso(s.updated_at)}


@app.get("/api/express-mode")
def get_express_mode():
    db = SessionLocal()
    try:
        setting = get_express_setting(db)
        db.commit()
        db.refresh(setting)
        return express_setting_to_dict(setting)
    except SQLAlchemyError as e:
        db.rollback()
        raise server_error(e)
    finally:
        db.close()


@app.put("/api/express-mode")
def set_express_mode(body: ExpressModeIn):
    db = SessionLocal()
    try:
        setting = get_express_setting(db)
        setting.is_enabled = body.is_enabled
        setting.updated_by = body.updated_by
        db.commit()
        db.refresh(setting)
        logger.info("express mode %s by %s", "enabled" if body.is_enabled else "disabled", body.updated_by)
        write_audit(db, "express_mode", 1, "toggle", body.updated_by, f"enabled={body.is_enabled}")
        return express_setting_to_dict(setting)
    except SQLAlchemyError as e:
        db.rollback()
        raise server_error(e)
    finally:
        db.close()


# ---------------------------
# Slips
# ---------------------------
class SlipIn(ApiModel):
    courier_id: str
    tracking_id: Optional[str] = None   # operator-supplied, custom couriers only
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_address: Optional[str] = None
    customer_mobile: Optional[str] = None
    sender_address_id: Optional[str] = None
    sender_name: Optional[str] = None
    sender_address: Optional[str] = None
    method: Optional[str] = None
    weight: Optional[float] = None
    number_of_boxes: Optional[int] = None
    box_weights: Optional[List[float]] = None
    generated_by: Optional[str] = None
    charges: float = 0
    is_to_pay_shipping: bool = False
    is_express_mode: Optional[bool] = None   # None -> follow the global express switch


class SlipPatch(ApiModel):
    # trackingId is deliberately absent: issued numbers never change
    model_config = ConfigDict(alias_generator=camel, populate_by_name=True, extra="forbid")

    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_address: Optional[str] = None
    customer_mobile: Optional[str] = None
    sender_address_id: Optional[str] = None
    sender_name: Optional[str] = None
    sender_address: Optional[str] = None
    method: Optional[str] = None
    charges: Optional[float] = None
    is_to_pay_shipping: Optional[bool] = None

    @field_validator("is_to_pay_shipping")
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError("may not be null")
        return value


def slip_parties(db, body) -> dict:
    """Customer and sender fields for a slip.

    Values sent with the request win; a referenced customer or sender
    address fills whatever the request left out.
    """
    sent = body.model_fields_set
    out = {
        "customer_name": body.customer_name,
        "customer_address": body.customer_address,
        "customer_mobile": body.customer_mobile,
        "sender_name": body.sender_name,
        "sender_address": body.sender_address,
        "is_to_pay_shipping": body.is_to_pay_shipping,
    }
    if body.customer_id:
        customer = db.get(Customer, body.customer_id)
        if customer is None:
            raise HTTPException(status_code=404, detail="Customer not found")
        out["customer_name"] = out["customer_name"] or customer.name
        out["customer_address"] = out["customer_address"] or format_address(customer)
        out["customer_mobile"] = out["customer_mobile"] or format_mobiles(customer.mobile, customer.mobile2)
        if "is_to_pay_shipping" not in sent:
            out["is_to_pay_shipping"] = customer.default_to_pay_shipping
    if body.sender_address_id:
        sender = db.get(SenderAddress, body.sender_address_id)
        if sender is None:
            raise HTTPException(status_code=404, detail="Sender address not found")
        out["sender_name"] = out["sender_name"] or sender.name
        out["sender_address"] = out["sender_address"] or format_address(sender)
    return out


class PackIn(ApiModel):
    username: Optional[str] = None


class BoxWeightsIn(ApiModel):
    box_weights: List[float] = Field(min_length=1)
    weighed_by: Optional[str] = None


def slip_to_dict(s: CourierSlip) -> dict:
    return {
        "id": s.id,
        "trackingId": s.tracking_id,
        "customerId": s.customer_id,
        "customerName": s.customer_name,
        "customerAddress": s.customer_address,
        "customerMobile": s.customer_mobile,
        "courierId": s.courier_id,
        "courierName": s.courier_name,
        "senderAddressId": s.sender_address_id,
        "senderName": s.sender_name,
        "senderAddress": s.sender_address,
        "method": s.method,
        "weight": s.weight,
        "numberOfBoxes": s.number_of_boxes,
        "boxWeights": s.box_weights,
        "weighedAt": iso(s.weighed_at),
        "weighedBy": s.weighed_by,
        "generatedBy": s.generated_by,
        "generatedAt": iso(s.generated_at),
        "charges": s.charges,
        "isCancelled": s.is_cancelled,
        "isToPayShipping": s.is_to_pay_shipping,
        "isPacked": s.is_packed,
        "packedAt": iso(s.packed_at),
        "packedBy": s.packed_by,
        "isExpressMode": s.is_express_mode,
    }


@app.post("/api/slips", status_code=201)
def create_slip(body: SlipIn):
    db = SessionLocal()
    try:
        # allocation and insert share one transaction: no slip without a number, no number without a slip
        with db.begin():
            courier = db.get(Courier, body.courier_id)
            if courier is None:
                raise CourierNotFound()
            parties = slip_parties(db, body)
            is_express_mode = body.is_express_mode
            if is_express_mode is None:
                is_express_mode = get_express_setting(db).is_enabled

            warning = None
            if courier.is_custom_courier:
                tracking_id = (body.tracking_id or "").strip()
                if not tracking_id:
                    raise HTTPException(status_code=400, detail="Tracking ID is required for custom courier")
            else:
                allocation = allocate_tracking_number(db, courier.id, is_express_mode)
                tracking_id = format_tracking_id(courier, allocation.new_number, is_express_mode)
                warning = {"isLow": allocation.is_low, "remainingCount": allocation.remaining_count}

            slip = CourierSlip(
                tracking_id=tracking_id,
                customer_id=body.customer_id,
                customer_name=parties["customer_name"],
                customer_address=parties["customer_address"],
                customer_mobile=parties["customer_mobile"],
                courier_id=courier.id,
                courier_name=courier.name,
                sender_address_id=body.sender_address_id,
                sender_name=parties["sender_name"],
                sender_address=parties["sender_address"],
                method=body.method or courier.default_shipment_method,
                weight=body.weight,
                number_of_boxes=body.number_of_boxes,
                box_weights=body.box_weights,
                generated_by=body.generated_by,
                charges=body.charges,
                is_to_pay_shipping=parties["is_to_pay_shipping"],
                is_express_mode=is_express_mode,
            )
            db.add(slip)
            db.flush()
        db.refresh(slip)
        logger.info("slip %s generated with tracking id %s", slip.id, slip.tracking_id)
        write_audit(db, "slip", slip.id, "generate", body.generated_by,
                    f"tracking={slip.tracking_id}, courier={slip.courier_id}, express={slip.is_express_mode}")
        out = slip_to_dict(slip)
        out["trackingWarning"] = warning
        return out
    except IntegrityError:
        # Unique constraint prevented a duplicate tracking id
        raise HTTPException(status_code=409, detail="tracking_id already exists")
    except SQLAlchemyError as e:
        raise server_error(e)
    finally:
        db.close()


@app.get("/api/slips")
def list_slips(limit: int = 200):
    db = SessionLocal()
    try:
        rows = (db.query(CourierSlip)
                .order_by(CourierSlip.generated_at.desc(), CourierSlip.id.desc())
                .limit(limit)
                .all())
        return [slip_to_dict(s) for s in rows]
    except SQLAlchemyError as e:
        raise server_error(e)
    finally:
        db.close()


@app.get("/api/slips/{slip_id}")
def get_slip(slip_id: int):
    db = SessionLocal()
    try:
        s = db.get(CourierSlip, slip_id)
        if not s:
            raise HTTPException(status_code=404, detail="Slip not found")
        return slip_to_dict(s)
    except SQLAlchemyError as e:
        raise server_error(e)
    finally:
        db.close()


@app.patch("/api/slips/{slip_id}")
def update_slip(slip_id: int, body: SlipPatch):
    db = SessionLocal()
    try:
        s = db.get(CourierSlip, slip_id)
        if not s:
            raise HTTPException(status_code=404, detail="Slip not found")
        fields = body.model_dump(exclude_unset=True)
        if not fields:
            return slip_to_dict(s)
        # a newly referenced customer/sender refreshes the copied fields the request left out
        if fields.get("customer_id"):
            customer = db.get(Customer, fields["customer_id"])
            if customer is None:
                raise HTTPException(status_code=404, detail="Customer not found")
            fields.setdefault("customer_name", customer.name)
            fields.setdefault("customer_address", format_address(customer))
            fields.setdefault("customer_mobile", format_mobiles(customer.mobile, customer.mobile2))
        if fields.get("sender_address_id"):
            sender = db.get(SenderAddress, fields["sender_address_id"])
            if sender is None:
                raise HTTPException(status_code=404, detail="Sender address not found")
            fields.setdefault("sender_name", sender.name)
            fields.setdefault("sender_address", format_address(sender))
        for name, value in fields.items():
            setattr(s, name, value)
        db.commit()
        db.refresh(s)
        write_audit(db, "slip", slip_id, "update", None, f"fields={','.join(sorted(fields))}")
        return slip_to_dict(s)
    except SQLAlchemyError as e:
        db.rollback()
        raise server_error(e)
    finally:
        db.close()


@app.patch("/api/slips/{slip_id}/packed")
def mark_packed(slip_id: int, body: PackIn):
    if not body.username:
        raise HTTPException(status_code=400, detail="Username is required")
    db = SessionLocal()
    try:
        # conditional update so two packers cannot both claim the slip
        result = db.execute(update(CourierSlip)
                            .where(CourierSlip.id == slip_id, CourierSlip.is_packed.is_(False))
                            .values(is_packed=True, packed_at=datetime.now(timezone.utc),
                                    packed_by=body.username)
                            .execution_options(synchronize_session=False))
        claimed = result.rowcount
        db.commit()
        if claimed == 0:
            if db.get(CourierSlip, slip_id) is None:
                raise HTTPException(status_code=404, detail="Slip not found")
            raise HTTPException(status_code=400, detail="Slip is already packed")
        s = db.get(CourierSlip, slip_id)
        write_audit(db, "slip", slip_id, "pack", body.username, f"tracking={s.tracking_id}")
        return slip_to_dict(s)
    except SQLAlchemyError as e:
        db.rollback()
        raise server_error(e)
    finally:
        db.close()


@app.patch("/api/slips/{slip_id}/box-weights")
def record_box_weights(slip_id: int, body: BoxWeightsIn):
    if any(w <= 0 for w in body.box_weights):
        raise HTTPException(status_code=400, detail="Box weights must be positive")
    db = SessionLocal()
    try:
        s = db.get(CourierSlip, slip_id)
        if not s:
            raise HTTPException(status_code=404, detail="Slip not found")
        s.box_weights = list(body.box_weights)
        s.number_of_boxes = len(body.box_weights)
        s.weight = round(sum(body.box_weights), 3)
        s.weighed_at = datetime.now(timezone.utc)
        s.weighed_by = body.weighed_by
        db.commit()
        db.refresh(s)
        write_audit(db, "slip", slip_id, "weigh", body.weighed_by,
                    f"boxes={s.number_of_boxes}, weight={s.weight}")
        return slip_to_dict(s)
    except SQLAlchemyError as e:
        db.rollback()
        raise server_error(e)
    finally:
        db.close()


@app.post("/api/slips/{slip_id}/cancel")
def cancel_slip(slip_id: int, username: Optional[str] = None):
    db = SessionLocal()
    try:
        s = db.get(CourierSlip, slip_id)
        if not s:
            raise HTTPException(status_code=404, detail="Slip not found")
        if s.is_cancelled:
            raise HTTPException(status_code=400, detail="Slip is already cancelled")
        # the tracking number stays consumed; counters never move back
        s.is_cancelled = True
        db.commit()
        db.refresh(s)
        write_audit(db, "slip", slip_id, "cancel", username, f"tracking={s.tracking_id}")
        return slip_to_dict(s)
    except SQLAlchemyError as e:
        db.rollback()
        raise server_error(e)
    finally:
        db.close()


# ---------------------------
# Audit logs
# ---------------------------
def audit_to_dict(a: AuditLog) -> dict:
    return {
        "id": a.id,
        "entity": a.entity,
        "entityId": a.entity_id,
        "action": a.action,
        "user": a.user,
        "details": a.details,
        "timestamp": iso(a.timestamp),
    }


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # timestamps are stored as UTC wall time
    if dt is not None and dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


@app.get("/api/audit-logs")
def list_audit_logs(entity: Optional[str] = None, action: Optional[str] = None,
                    start_date: Optional[datetime] = Query(None, alias="startDate"),
                    end_date: Optional[datetime] = Query(None, alias="endDate"),
                    limit: int = 200):
    db = SessionLocal()
    try:
        q = db.query(AuditLog)
        if entity:
            q = q.filter(AuditLog.entity == entity)
        if action:
            q = q.filter(AuditLog.action == action)
        if start_date:
            q = q.filter(AuditLog.timestamp >= as_utc(start_date))
        if end_date:
            q = q.filter(AuditLog.timestamp <= as_utc(end_date))
        rows = q.order_by(AuditLog.id.desc()).limit(limit).all()
        return [audit_to_dict(a) for a in rows]
    except SQLAlchemyError as e:
        raise server_error(e)
    finally:
        db.close()


@app.get("/api/audit-logs/{log_id}")
def get_audit_log(log_id: int):
    db = SessionLocal()
    try:
        a = db.get(AuditLog, log_id)
        if not a:
            raise HTTPException(status_code=404, detail="Audit log not found")
        return audit_to_dict(a)
    except SQLAlchemyError as e:
        raise server_error(e)
    finally:
        db.close()



# ---------------------------
# Reports: summary, export
# ---------------------------
def period_key(dt: datetime, period: str) -> str:
    if period == "daily":
        return dt.strftime("%Y%m%d")
    if period == "monthly":
        return dt.strftime("%Y%m")
    return dt.strftime("%Y")


@app.get("/api/reports/summary")
def report_summary(period: str = Query("daily", pattern="^(daily|monthly|yearly)$"), date: Optional[str] = None):
    db = SessionLocal()
    try:
        rows = db.query(CourierSlip).order_by(CourierSlip.generated_at.desc()).all()
        totals = {"generated": 0, "packed": 0, "cancelled": 0, "express": 0}
        items = []
        for s in rows:
            dt = s.generated_at
            if date:
                if not dt or period_key(dt, period) != date:
                    continue
            totals["generated"] += 1
            totals["packed"] += int(bool(s.is_packed))
            totals["cancelled"] += int(bool(s.is_cancelled))
            totals["express"] += int(bool(s.is_express_mode))
            items.append(slip_to_dict(s))
        return {"period": period, "date": date, **totals, "items": items[:200]}
    except SQLAlchemyError as e:
        raise server_error(e)
    finally:
        db.close()


EXPORT_COLUMNS = ["id", "tracking_id", "courier_name", "customer_name", "customer_mobile", "method",
                  "weight", "number_of_boxes", "is_express_mode", "is_packed", "is_cancelled", "generated_at"]


@app.get("/api/reports/export")
def export_report(fmt: str = Query("csv", pattern="^(csv|xlsx)$")):
    db = SessionLocal()
    try:
        rows = []
        for s in db.query(CourierSlip).order_by(CourierSlip.generated_at, CourierSlip.id).all():
            row = {col: getattr(s, col) for col in EXPORT_COLUMNS}
            row["generated_at"] = iso(s.generated_at)
            rows.append(row)
    except SQLAlchemyError as e:
        raise server_error(e)
    finally:
        db.close()

    stamp = datetime.now().strftime("%Y%m%d")
    if fmt == "csv":
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS)
        writer.writeheader()
        writer.writerows(rows)
        return Response(content=buffer.getvalue(), media_type="text/csv",
                        headers={"Content-Disposition": f'attachment; filename="slip_report_{stamp}.csv"'})

    df = pd.DataFrame(rows, columns=EXPORT_COLUMNS)
    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        df.to_excel(writer, index=False, sheet_name="slips")
    buffer.seek(0)
    return Response(content=buffer.read(),
                    media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
                    headers={"Content-Disposition": f'attachment; filename="slip_report_{stamp}.xlsx"'})
# EOF
