"""Configurable fake order service for development and testing.

Succeeds by default; ``configure(should_succeed=False)`` makes every
submission fail with the configured reason.
"""

import time
from uuid import uuid4

from storefront.integrations.order_port import OrderReceipt, OrderService, OrderServiceError, OrderSubmission


class FakeOrderService(OrderService):
    def __init__(self) -> None:
        self.should_succeed: bool = True
        self.failure_reason: str = "Order service unavailable"
        self.submissions: list[OrderSubmission] = []

    def configure(self, should_succeed: bool, failure_reason: str = "Order service unavailable") -> None:
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    async def create_orders(self, submission: OrderSubmission) -> list[OrderReceipt]:
        self.submissions.append(submission)

        if not self.should_succeed:
            raise OrderServiceError(self.failure_reason)

        return [
            OrderReceipt(
                order_id=str(uuid4()),
                order_number=f"ORD-{int(time.time() * 1000)}-{uuid4().hex[:7].upper()}",
                seller_id=group.seller_id,
            )
            for group in submission.groups
        ]
