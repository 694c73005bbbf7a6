# server/app/models.py
import uuid
from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, Float, JSON
from sqlalchemy.sql import func
from .db import Base


def new_id() -> str:
    return uuid.uuid4().hex


# Courier partner with its standard and express tracking ranges
class Courier(Base):
    __tablename__ = "couriers"
    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, index=True, nullable=False)
    prefix = Column(String, nullable=True)
    starting_tracking_number = Column(Integer, nullable=False, default=0)
    current_tracking_number = Column(Integer, nullable=False, default=0)
    end_tracking_number = Column(Integer, nullable=False, default=0)
    air_charges = Column(Float, nullable=True)
    surface_charges = Column(Float, nullable=True)
    is_custom_courier = Column(Boolean, nullable=False, default=False)
    default_shipment_method = Column(String, nullable=True)
    default_print_type = Column(String, nullable=True)
    express_prefix = Column(String, nullable=True)
    express_starting_tracking_number = Column(Integer, nullable=True)
    express_current_tracking_number = Column(Integer, nullable=True)
    express_end_tracking_number = Column(Integer, nullable=True)
    express_air_charges = Column(Float, nullable=True)
    express_surface_charges = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


# Consignee record; slips copy its name/address/mobile at generation time
class Customer(Base):
    __tablename__ = "customers"
    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, index=True, nullable=False)
    email = Column(String, nullable=True)
    mobile = Column(String, nullable=True)
    mobile2 = Column(String, nullable=True)
    address_line1 = Column(String, nullable=True)
    address_line2 = Column(String, nullable=True)
    landmark = Column(String, nullable=True)
    city = Column(String, nullable=True)
    state = Column(String, nullable=True)
    pincode = Column(String, nullable=True)
    preferred_courier = Column(String, nullable=True)
    default_to_pay_shipping = Column(Boolean, nullable=False, default=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


# Shipping origin; at most one row is the default
class SenderAddress(Base):
    __tablename__ = "sender_addresses"
    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, index=True, nullable=False)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    mobile = Column(String, nullable=True)
    mobile2 = Column(String, nullable=True)
    gst_number = Column(String, nullable=True)
    address_line1 = Column(String, nullable=True)
    address_line2 = Column(String, nullable=True)
    landmark = Column(String, nullable=True)
    city = Column(String, nullable=True)
    district = Column(String, nullable=True)
    state = Column(String, nullable=True)
    pincode = Column(String, nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


# Global express-mode switch, a single row with id=1
class ExpressModeSetting(Base):
    __tablename__ = "express_mode_settings"
    id = Column(Integer, primary_key=True)
    is_enabled = Column(Boolean, nullable=False, default=False)
    updated_by = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


# Shipment slip; tracking_id is a copy, not a link back to the counter
class CourierSlip(Base):
    __tablename__ = "courier_slips"
    id = Column(Integer, primary_key=True)
    tracking_id = Column(String, unique=True, index=True, nullable=False)
    customer_id = Column(String, nullable=True)
    customer_name = Column(String, nullable=True)
    customer_address = Column(Text, nullable=True)
    customer_mobile = Column(String, nullable=True)
    courier_id = Column(String, index=True, nullable=False)
    courier_name = Column(String, nullable=True)
    sender_address_id = Column(String, nullable=True)
    sender_name = Column(String, nullable=True)
    sender_address = Column(Text, nullable=True)
    method = Column(String, nullable=True)
    weight = Column(Float, nullable=True)
    number_of_boxes = Column(Integer, nullable=True)
    box_weights = Column(JSON, nullable=True)
    weighed_at = Column(DateTime(timezone=True), nullable=True)
    weighed_by = Column(String, nullable=True)
    generated_by = Column(String, nullable=True)
    generated_at = Column(DateTime(timezone=True), server_default=func.now())
    charges = Column(Float, nullable=True, default=0)
    is_cancelled = Column(Boolean, nullable=False, default=False)
    is_to_pay_shipping = Column(Boolean, nullable=False, default=False)
    is_packed = Column(Boolean, nullable=False, default=False)
    packed_at = Column(DateTime(timezone=True), nullable=True)
    packed_by = Column(String, nullable=True)
    is_express_mode = Column(Boolean, nullable=False, default=False)


# บันทึก audit
class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True)
    entity = Column(String)
    entity_id = Column(String)
    action = Column(String)
    user = Column(String)
    details = Column(Text)
    timestamp = Column(DateTime(timezone=True), server_default=func.now())
