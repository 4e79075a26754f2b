"""Order persistence with per-order optimistic concurrency.

``orders.version`` is the mapper's ``version_id_col``: every flush of an
order issues ``UPDATE ... WHERE id = :id AND version = :seen``. A concurrent
writer makes that match zero rows, SQLAlchemy raises ``StaleDataError`` and
``update`` re-reads the row and re-applies the mutation.
"""

from datetime import datetime, timedelta
from typing import Callable, List, Optional, TypeVar

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.domain.errors import ConflictError, NotFoundError
from app.domain.models import Order, utcnow
from app.domain.status import OrderStatus, PaymentMethod, PaymentStatus
from shared.core import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class OrderStore:
    def __init__(self, db: Session, max_attempts: int = 5):
        self.db = db
        self.max_attempts = max_attempts

    def get(self, order_number: str, *, fresh: bool = False) -> Optional[Order]:
        stmt = select(Order).where(Order.order_number == order_number)
        if fresh:
            stmt = stmt.execution_options(populate_existing=True)
        return self.db.scalars(stmt).first()

    def require(self, order_number: str, *, fresh: bool = False) -> Order:
        order = self.get(order_number, fresh=fresh)
        if order is None:
            raise NotFoundError(f"Order {order_number} not found", code="order_not_found")
        return order

    def get_by_tracking_number(self, tracking_number: str) -> Optional[Order]:
        return self.db.scalars(
            select(Order).where(Order.tracking_number == tracking_number)
        ).first()

    def list_for_customer(self, customer_id: str) -> List[Order]:
        return list(self.db.scalars(
            select(Order).where(Order.customer_id == customer_id).order_by(Order.created_at.desc(), Order.id.desc())
        ))

    def list_all(self) -> List[Order]:
        return list(self.db.scalars(select(Order).order_by(Order.created_at.desc(), Order.id.desc())))

    def list_awaiting_payment(self, created_before: datetime) -> List[Order]:
        return list(self.db.scalars(
            select(Order).where(
                Order.status == OrderStatus.PENDING_PAYMENT.value,
                Order.created_at < created_before,
            )
        ))

    def list_awaiting_shipment(self) -> List[Order]:
        """Confirmed orders that never got a consignment booked."""
        return list(self.db.scalars(
            select(Order).where(
                Order.tracking_number.is_(None),
                or_(
                    and_(
                        Order.payment_method == PaymentMethod.COD.value,
                        Order.status.in_([OrderStatus.PENDING.value, OrderStatus.PROCESSING.value]),
                    ),
                    and_(
                        Order.payment_status == PaymentStatus.PAID.value,
                        Order.status == OrderStatus.PROCESSING.value,
                    ),
                ),
            )
        ))

    def list_unrefunded_cancellations(self) -> List[Order]:
        """Cancelled gateway orders whose payment settled but was never refunded."""
        return list(self.db.scalars(
            select(Order).where(
                Order.status == OrderStatus.CANCELLED.value,
                Order.payment_method != PaymentMethod.COD.value,
                Order.payment_status == PaymentStatus.PAID.value,
                Order.refund_id.is_(None),
            )
        ))

    def add(self, order: Order) -> Order:
        self.db.add(order)
        self.db.flush()
        return order

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()

    def update(self, order_number: str, mutate: Callable[[Order], T]) -> T:
        """Apply ``mutate`` to the latest persisted order and commit atomically.

        ``mutate`` may raise to abort; the session is rolled back and the
        error propagates. It must be free of external side effects since it
        can run more than once.
        """
        for attempt in range(1, self.max_attempts + 1):
            order = self.require(order_number, fresh=True)
            try:
                result = mutate(order)
                self.db.commit()
                return result
            except StaleDataError:
                self.db.rollback()
                logger.warning(
                    f"Concurrent update on order {order_number}, retrying",
                    extra={'extra_fields': {'order_number': order_number, 'attempt': attempt}},
                )
            except Exception:
                self.db.rollback()
                raise
        raise ConflictError(
            f"Order {order_number} is being updated concurrently, try again",
            code="concurrent_update",
        )

    def claim_booking(self, order_number: str, stale_after: timedelta) -> bool:
        """Reserve the right to book a consignment for this order.

        Succeeds for exactly one caller while no tracking number exists and
        no other claim younger than ``stale_after`` is held.
        """
        now = utcnow()
        result = self.db.execute(
            update(Order)
            .where(
                Order.order_number == order_number,
                Order.tracking_number.is_(None),
                or_(Order.booking_claimed_at.is_(None), Order.booking_claimed_at < now - stale_after),
            )
            .values(booking_claimed_at=now, version=Order.version + 1)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def release_booking(self, order_number: str) -> None:
        self.db.execute(
            update(Order)
            .where(Order.order_number == order_number, Order.tracking_number.is_(None))
            .values(booking_claimed_at=None, version=Order.version + 1)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

    def record_refund(self, order_number: str, refund_id: str, refund_status: str, refund_amount) -> None:
        """Persist a refund the gateway has accepted, whatever the order's state."""
        self.db.execute(
            update(Order)
            .where(Order.order_number == order_number)
            .values(
                refund_id=refund_id,
                refund_status=refund_status,
                refund_amount=refund_amount,
                version=Order.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
