"""Polling queue worker dispatching run-process and name-generation messages."""

from __future__ import annotations

import argparse
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable

from pydantic import BaseModel, ValidationError

from run_orchestrator.config.settings import get_settings
from run_orchestrator.queue.name_generation import (
    RUN_NAME_GENERATION_QUEUE,
    RunNameGenerationMessage,
    handle_run_name_generation_message,
)
from run_orchestrator.queue.run_process import (
    RUN_PROCESS_QUEUE,
    RunProcessMessage,
    handle_run_process_message,
)
from run_orchestrator.runs.context import OrchestratorContext, build_context

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueBinding:
    name: str
    message_model: type[BaseModel]
    handler: Callable[[Any, OrchestratorContext], Any]


def default_bindings() -> list[QueueBinding]:
    return [
        QueueBinding(RUN_PROCESS_QUEUE, RunProcessMessage, handle_run_process_message),
        QueueBinding(
            RUN_NAME_GENERATION_QUEUE,
            RunNameGenerationMessage,
            handle_run_name_generation_message,
        ),
    ]


class QueueWorker:
    """Receives up to ``concurrency`` messages per queue and handles them in parallel.

    Malformed messages are acknowledged and dropped. A handler error releases
    the message for redelivery.
    """

    def __init__(
        self,
        ctx: OrchestratorContext,
        *,
        bindings: list[QueueBinding] | None = None,
        concurrency: int | None = None,
        poll_interval_s: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.ctx = ctx
        self.bindings = bindings or default_bindings()
        self.concurrency = concurrency or ctx.settings.queue_concurrency
        self.poll_interval_s = (
            poll_interval_s if poll_interval_s is not None else ctx.settings.queue_poll_interval_s
        )
        self.sleep = sleep
        self._stopped = threading.Event()

    def poll_once(self) -> int:
        """Handle one batch from every queue. Returns the number of messages received."""
        received = 0
        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            futures = []
            for binding in self.bindings:
                batch = self.ctx.queue.receive(binding.name, max_messages=self.concurrency)
                received += len(batch)
                futures.extend(
                    pool.submit(self._handle, binding, receipt, body) for receipt, body in batch
                )
            for future in futures:
                future.result()
        return received

    def run_forever(self) -> None:
        logger.info(
            "queue_worker event=start queues=%s concurrency=%d",
            ",".join(binding.name for binding in self.bindings),
            self.concurrency,
        )
        while not self._stopped.is_set():
            if self.poll_once() == 0:
                self.sleep(self.poll_interval_s)
        logger.info("queue_worker event=stopped")

    def stop(self) -> None:
        self._stopped.set()

    def _handle(self, binding: QueueBinding, receipt: str, body: dict[str, Any]) -> None:
        try:
            message = binding.message_model.model_validate(body)
        except ValidationError as exc:
            logger.error(
                "queue_worker event=invalid_message queue=%s errors=%d body=%s",
                binding.name,
                exc.error_count(),
                body,
            )
            self.ctx.queue.ack(binding.name, receipt)
            return

        started_at = time.perf_counter()
        try:
            binding.handler(message, self.ctx)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "queue_worker event=handler_failed queue=%s error_type=%s reason=%s",
                binding.name,
                type(exc).__name__,
                exc,
            )
            self.ctx.queue.release(binding.name, receipt)
            return

        self.ctx.queue.ack(binding.name, receipt)
        logger.info(
            "queue_worker event=handled queue=%s duration_ms=%.2f",
            binding.name,
            (time.perf_counter() - started_at) * 1000.0,
        )


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the orchestration queue worker.")
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Messages handled in parallel per queue (default: RUN_ORCHESTRATOR_QUEUE_CONCURRENCY).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Root log level.",
    )
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    worker = QueueWorker(build_context(get_settings()), concurrency=args.concurrency)
    try:
        worker.run_forever()
    except KeyboardInterrupt:
        worker.stop()


if __name__ == "__main__":
    main()
