from pydantic import BaseModel, Field
from datetime import date, datetime
from decimal import Decimal
from typing import Literal, Optional


class Principal(BaseModel):
    """Authenticated caller, resolved from the bearer token."""
    id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class Address(BaseModel):
    name: str
    lastname: Optional[str] = None
    company_name: Optional[str] = None
    country: str = "India"
    street_address: str
    apartment: Optional[str] = None
    city: str
    state: str
    zip: str
    phone: str
    email: str


class OrderItemCreate(BaseModel):
    product_id: str
    quantity: int


class OrderCreate(BaseModel):
    items: list[OrderItemCreate] = []
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    payment_method: Optional[str] = None
    shipping_cost: Decimal = Decimal("0")
    coupon_code: Optional[str] = None
    # advisory; the server computes its own discount
    discount_amount: Optional[Decimal] = None


class OrderCreated(BaseModel):
    success: bool = True
    order_number: str
    status: str
    payment_status: str
    total_amount: Decimal
    shipping_cost: Decimal
    discount_amount: Decimal
    payable_amount: Decimal
    tracking_number: Optional[str] = None
    redirect_url: Optional[str] = None
    booking_error: Optional[str] = None
    message: str


class OrderItemRead(BaseModel):
    product_id: str
    name: str
    unit_price: Decimal
    quantity: int
    thumbnail: Optional[str] = None
    class Config:
        from_attributes = True


class TrackingEventRead(BaseModel):
    action: str
    action_desc: Optional[str] = None
    action_timestamp: Optional[str] = None
    origin: Optional[str] = None
    remarks: str = ""
    latitude: str = ""
    longitude: str = ""
    manifest_no: str = ""
    tracking_number: str = ""
    class Config:
        from_attributes = True


class OrderRead(BaseModel):
    order_number: str
    customer_id: str
    status: str
    payment_status: str
    payment_method: str
    transaction_id: Optional[str] = None
    total_amount: Decimal
    shipping_cost: Decimal
    discount_amount: Decimal
    payable_amount: Decimal
    coupon_code: Optional[str] = None
    shipping_address: dict
    billing_address: dict
    tracking_number: Optional[str] = None
    weight: Optional[str] = None
    rto_number: Optional[str] = None
    expected_delivery_date: Optional[datetime] = None
    rev_expected_delivery_date: Optional[datetime] = None
    cancellation_requested: bool = False
    cancellation_reason: Optional[str] = None
    refund_status: Optional[str] = None
    refund_id: Optional[str] = None
    refund_amount: Decimal = Decimal("0")
    created_at: datetime
    updated_at: datetime
    items: list[OrderItemRead]
    tracking_updates: list[TrackingEventRead] = []
    class Config:
        from_attributes = True


class OrderSummary(BaseModel):
    """Row of the admin order list."""
    order_number: str
    customer_id: str
    created_at: datetime
    payable_amount: Decimal
    status: str
    item_count: int
    payment_method: str
    tracking_number: Optional[str] = None


class CancellationRequest(BaseModel):
    order_number: str
    reason: str = ""


class CancelOrder(BaseModel):
    reason: str = ""


class CancelResult(BaseModel):
    success: bool = True
    order_number: str
    status: str
    refund_status: Optional[str] = None
    refund_id: Optional[str] = None
    refund_amount: Decimal = Decimal("0")
    carrier_cancelled: bool = False
    message: str


class PaymentStatusRead(BaseModel):
    order_number: str
    state: str
    status: str
    payment_status: str
    transaction_id: Optional[str] = None
    tracking_number: Optional[str] = None


class RefundStatusRead(BaseModel):
    order_number: str
    refund_id: str
    refund_status: str
    status: str
    refund_amount: Decimal


class BookingResult(BaseModel):
    order_number: str
    tracking_number: str
    status: str


class ReconcileReport(BaseModel):
    confirmed: list[str] = []
    failed_payments: list[str] = []
    still_pending: list[str] = []
    booked: list[str] = []
    refunded: list[str] = []
    errors: list[dict] = []


class Coordinates(BaseModel):
    latitude: str = ""
    longitude: str = ""


class CarrierEvent(BaseModel):
    code: str
    description: Optional[str] = None
    timestamp: Optional[str] = None
    remarks: str = ""
    origin: Optional[str] = None
    manifest_no: str = Field(default="", alias="manifestNo")
    coordinates: Optional[Coordinates] = None
    class Config:
        populate_by_name = True


class TrackingWebhook(BaseModel):
    shipment_id: str = Field(alias="shipmentId")
    events: list[CarrierEvent] = []
    weight: Optional[str] = None
    rto_number: Optional[str] = Field(default=None, alias="rtoNumber")
    # DDMMYYYY, as the carrier sends them
    expected_delivery_date: Optional[str] = Field(default=None, alias="expectedDeliveryDate")
    rev_expected_delivery_date: Optional[str] = Field(default=None, alias="revExpectedDeliveryDate")
    class Config:
        populate_by_name = True


class TrackingResult(BaseModel):
    success: bool = True
    order_number: str
    status: str
    recorded_events: int
    ignored_codes: list[str] = []


class CartItem(BaseModel):
    product_id: str
    price: Decimal
    quantity: int


class CouponApply(BaseModel):
    code: str
    order_amount: Decimal
    cart_items: list[CartItem] = []
    user_id: Optional[str] = None


class CouponPreview(BaseModel):
    success: bool = True
    code: str
    discount_amount: Decimal
    eligible_amount: Decimal
    final_amount: Decimal
    free_units: int = 0
    eligible_product_ids: list[str] = []


class CouponCreate(BaseModel):
    code: str
    coupon_type: str = "standard"
    discount_type: Literal["percentage", "fixed"] = "percentage"
    discount_value: Decimal = Decimal("0")
    min_order_amount: Decimal = Decimal("0")
    max_discount_amount: Optional[Decimal] = None
    combo_discount_amount: Decimal = Decimal("100")
    buy_quantity: int = 0
    get_quantity: int = 0
    required_quantity: int = 0
    applicable_products: list[str] = []
    start_date: date
    end_date: date
    usage_limit: Optional[int] = None
    first_time_users_only: bool = False


class CouponStatusUpdate(BaseModel):
    status: str


class CouponRead(BaseModel):
    id: int
    code: str
    coupon_type: str
    discount_type: str
    discount_value: Decimal
    min_order_amount: Decimal
    max_discount_amount: Optional[Decimal] = None
    combo_discount_amount: Decimal
    buy_quantity: int
    get_quantity: int
    required_quantity: int
    applicable_products: list[str]
    start_date: datetime
    end_date: datetime
    status: str
    usage_limit: Optional[int] = None
    used_count: int
    first_time_users_only: bool
    class Config:
        from_attributes = True
