"""HTTP surface of the delivery worker: health, metrics, stats and DLQ replay."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException

from giftflow.common.metrics import metrics_response
from giftflow.services.delivery.service import DeliveryConsumer


def create_app(consumer: DeliveryConsumer, run_consumer: bool = True) -> FastAPI:
    """Build the delivery worker app; the consumer loop follows the app lifecycle."""

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        consumer_task = asyncio.create_task(consumer.run_forever()) if run_consumer else None
        yield
        if consumer_task is not None:
            consumer_task.cancel()

    app = FastAPI(title="GiftFlow Delivery Worker", lifespan=lifespan)

    @app.get("/internal/delivery/stats")
    def stats():
        """Consumer counters plus current queue depth."""

        return {
            "stats": consumer.stats.snapshot().model_dump(mode="json"),
            "queue": consumer.queue.depth(),
        }

    @app.get("/internal/delivery/dlq")
    def dead_letters():
        return {"message_ids": consumer.queue.dead_letters()}

    @app.post("/internal/delivery/dlq/{message_id}/replay")
    def replay_dead_letter(message_id: str):
        """Put one dead-lettered message back on the queue."""

        if not consumer.queue.replay_dead_letter(message_id):
            raise HTTPException(status_code=404, detail="dead letter not found")
        return {"replayed": message_id}

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True}

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    return app
