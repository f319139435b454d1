from __future__ import annotations

import logging
import os
from typing import Optional

from . import metrics
from .audit import AuditLog
from .idempotency import IdempotencyGate, ServiceResponse, compute_request_hash
from .repository import OrderRepository
from .schemas import CreateGuestOrderRequest, CreateOrderRequest
from .validation import OrderIntakeValidator, round2

logger = logging.getLogger(__name__)

TOTAL_MISMATCH_ERROR = "Order total does not match sum of items"


def guest_user_id() -> int:
    return int(os.environ.get("GUEST_USER_ID", "0"))


class OrderIntakeService:
    def __init__(
        self,
        validator: OrderIntakeValidator,
        gate: IdempotencyGate,
        orders: OrderRepository,
        audit: AuditLog,
        guest_user: Optional[int] = None,
    ):
        self._validator = validator
        self._gate = gate
        self._orders = orders
        self._audit = audit
        self._guest_user = guest_user if guest_user is not None else guest_user_id()

    def submit_guest_order(
        self,
        submission: CreateGuestOrderRequest,
        idempotency_key: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> ServiceResponse:
        rejection = self._validate(submission)
        if rejection is not None:
            return rejection

        return self._gate.get_idempotent_response(
            idempotency_key,
            compute_request_hash(submission),
            lambda: self._create(
                submission,
                created_by=self._guest_user,
                channel="guest",
                table_code=submission.tableCode,
                ip=ip,
            ),
        )

    def submit_staff_order(
        self,
        submission: CreateOrderRequest,
        created_by: int,
        ip: Optional[str] = None,
    ) -> ServiceResponse:
        rejection = self._validate(submission)
        if rejection is not None:
            return rejection
        return self._create(submission, created_by=created_by, channel="staff", ip=ip)

    def _validate(self, submission: CreateOrderRequest) -> ServiceResponse | None:
        # Total first: an inconsistent request never reaches the menu store.
        if not self._validator.validate_total(submission.items, submission.total):
            logger.info(
                "Rejected order: declared total %s, items sum %s",
                submission.total,
                self._validator.items_sum(submission.items),
            )
            metrics.order_validation_failures.labels(reason="total_mismatch").inc()
            return ServiceResponse(status=400, body={"error": TOTAL_MISMATCH_ERROR})

        result = self._validator.validate_against_menu(submission.items)
        if not result.valid:
            if result.internal:
                metrics.order_validation_failures.labels(reason="menu_unavailable").inc()
                return ServiceResponse(status=500, body={"error": result.error})
            logger.info("Rejected order: %s", result.error)
            metrics.order_validation_failures.labels(reason="menu_mismatch").inc()
            return ServiceResponse(status=400, body={"error": result.error})
        return None

    def _create(
        self,
        submission: CreateOrderRequest,
        *,
        created_by: int,
        channel: str,
        table_code: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> ServiceResponse:
        total = float(round2(submission.total))
        record = self._orders.insert_order(
            [item.model_dump() for item in submission.items],
            total,
            created_by,
            table_code,
        )
        logger.info(
            "Created order id=%s channel=%s items=%d total=%.2f",
            record.id,
            channel,
            len(record.items),
            record.total,
        )
        metrics.orders_created.labels(channel=channel).inc()
        self._audit.record(
            "order.create",
            "order",
            entity_id=record.id,
            actor_id=created_by,
            metadata={"total": total, "items": len(record.items), "channel": channel, "tableCode": table_code},
            ip=ip,
        )
        return ServiceResponse(status=201, body=record.as_response_body())
