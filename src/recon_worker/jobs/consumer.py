"""AMQP queue consumer and job publisher.

One job at a time per process: the queue is consumed with prefetch_count=1
and the next delivery is only accepted once the current one is acked. The
pipeline runs on a worker thread so the blocking connection keeps servicing
heartbeats during builds that last hours; the ack is scheduled back onto the
connection thread with add_callback_threadsafe.

Messages are acked whether the pipeline succeeded or failed. A failed job is
left in status=error and is resubmitted by an operator (`recon-worker enqueue
--reset`), never requeued automatically.
"""

import functools
import logging
import threading
from typing import Iterable, List, Optional

import pika

from ..errors import ReconWorkerError
from ..models import QueueConfig
from .models import JobStatus, PipelineResult
from .pipeline import JobPipeline

logger = logging.getLogger(__name__)


def decode_job_id(body: bytes) -> str:
    """Queue payload is the raw job id as text."""
    job_id = body.decode("utf-8").strip()
    if not job_id:
        raise ValueError("empty job id in message body")
    return job_id


def connection_parameters(config: QueueConfig) -> pika.URLParameters:
    params = pika.URLParameters(config.url)
    params.heartbeat = config.heartbeat_s
    return params


class QueueConsumer:
    """Consume job ids from a durable queue and run each through the pipeline."""

    def __init__(
        self,
        pipeline: JobPipeline,
        queue_config: QueueConfig,
        cancel_event: Optional[threading.Event] = None,
        connection_factory=pika.BlockingConnection,
    ):
        self.pipeline = pipeline
        self.config = queue_config
        self.cancel_event = cancel_event or threading.Event()
        self._connection_factory = connection_factory
        self._connection = None
        self._channel = None
        self._worker: Optional[threading.Thread] = None
        self.processed = 0

    def run(self) -> None:
        """Block consuming until stop() is called.

        Connection errors propagate to the caller (no reconnect loop).
        """
        self._connection = self._connection_factory(connection_parameters(self.config))
        self._channel = self._connection.channel()
        self._channel.queue_declare(queue=self.config.queue_name, durable=True)
        self._channel.basic_qos(prefetch_count=self.config.prefetch_count)
        self._channel.basic_consume(
            queue=self.config.queue_name,
            on_message_callback=self._on_message,
            auto_ack=False,
        )

        logger.info("consuming from %s (prefetch=%d)", self.config.queue_name, self.config.prefetch_count)
        try:
            self._channel.start_consuming()
        finally:
            self._join_worker()
            if self._connection.is_open:
                # Deliver the ack the last job scheduled before closing
                self._connection.process_data_events(time_limit=0)
                self._connection.close()
            logger.info("consumer stopped after %d jobs", self.processed)

    def stop(self) -> None:
        """Request a graceful stop; the running tool is killed via the cancel event.

        Safe to call from a signal handler.
        """
        logger.info("stop requested")
        self.cancel_event.set()
        if self._connection is not None and self._connection.is_open:
            self._connection.add_callback_threadsafe(self._stop_consuming)

    def _stop_consuming(self) -> None:
        if self._channel is not None and self._channel.is_open:
            self._channel.stop_consuming()

    def _on_message(self, channel, method, properties, body: bytes) -> None:
        self._worker = threading.Thread(
            target=self._work,
            args=(channel, method.delivery_tag, body),
            name="recon-job",
            daemon=True,
        )
        self._worker.start()

    def _work(self, channel, delivery_tag: int, body: bytes) -> None:
        self.handle_delivery(body)
        ack = functools.partial(self._ack, channel, delivery_tag)
        self._connection.add_callback_threadsafe(ack)

    def _ack(self, channel, delivery_tag: int) -> None:
        if channel.is_open:
            channel.basic_ack(delivery_tag=delivery_tag)
        else:
            logger.error("channel closed before ack of delivery %s", delivery_tag)

    def _join_worker(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            logger.info("waiting for in-flight job")
            self._worker.join()

    def handle_delivery(self, body: bytes) -> Optional[PipelineResult]:
        """Run the pipeline for one message. Never raises.

        Returns:
            PipelineResult (done or error), or None when the message could not
            be decoded or the job was missing
        """
        try:
            job_id = decode_job_id(body)
        except (UnicodeDecodeError, ValueError) as e:
            logger.error("discarding undecodable message %r: %s", body, e)
            return None

        logger.info("received job %s", job_id)
        try:
            result = self.pipeline.run(job_id)
        except ReconWorkerError as e:
            logger.error("job %s failed: %s: %s", job_id, type(e).__name__, e)
            result = self.pipeline.last_result
        except Exception:
            logger.exception("job %s crashed", job_id)
            result = self.pipeline.last_result
        finally:
            self.processed += 1

        if result is not None and result.status == JobStatus.DONE:
            logger.info("job %s done", job_id)
        return result


class JobPublisher:
    """Publish job ids onto the work queue with persistent delivery."""

    def __init__(self, queue_config: QueueConfig, connection_factory=pika.BlockingConnection):
        self.config = queue_config
        self._connection_factory = connection_factory

    def publish(self, job_ids: Iterable[str]) -> List[str]:
        connection = self._connection_factory(connection_parameters(self.config))
        published: List[str] = []
        try:
            channel = connection.channel()
            channel.queue_declare(queue=self.config.queue_name, durable=True)
            for job_id in job_ids:
                channel.basic_publish(
                    exchange="",
                    routing_key=self.config.queue_name,
                    body=str(job_id).encode("utf-8"),
                    properties=pika.BasicProperties(
                        delivery_mode=pika.DeliveryMode.Persistent
                    ),
                )
                published.append(str(job_id))
        finally:
            connection.close()
        return published
