"""Example: an order workflow woken by a payment event."""

import asyncio

from flowkeeper import (
    BaseWorkflow,
    Event,
    SubscriptionFilter,
    Worker,
    get_storage,
    register_workflow,
)


@register_workflow
class OrderWorkflow(BaseWorkflow):
    workflow_type = "order"

    def subscriptions(self):
        return [
            SubscriptionFilter(
                event_type="payment",
                context_key="order",
                context_value=str(self.context["order_id"]),
            )
        ]

    def uniqueness(self):
        return "order", str(self.context["order_id"])

    async def run(self, events):
        if not events:
            print(f"Order {self.context['order_id']} waiting for payment")
            self.schedule_in(3600)
            return
        print(f"Order {self.context['order_id']} paid: {events[0].context}")
        self.finish()


async def main():
    storage = get_storage("sqlite:///orders.db")
    await storage.init_db()

    created = await storage.workflows.create(OrderWorkflow({"order_id": 42}), unique=True)
    print(f"Created workflow: {created.value}")

    worker = Worker(storage)
    await worker.run_once()

    routed = await storage.events.route(
        Event(type="payment", context='{"amount": 10}', key_data={"order": "42"})
    )
    print(f"Payment delivered to {routed.value} workflows")

    await worker.run_once()
    await storage.close()


if __name__ == "__main__":
    asyncio.run(main())
