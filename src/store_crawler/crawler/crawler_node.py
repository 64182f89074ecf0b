"""
Crawler Node for the distributed store crawler.
Leases requests from the shared queue, fetches and routes them, pushes the
requests it discovers back to the queue and streams product records to the
master process.
"""
import logging
import os
import signal
import sys
import time
import traceback
import uuid
from collections import Counter
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait

from ..common.config import (
    DEFAULT_LEASE_DURATION, DEFAULT_MAX_CONCURRENCY, DEFAULT_MAX_REQUEST_RETRIES,
    IDLE_POLL_MAX, IDLE_POLL_MIN, RETRY_BACKOFF
)
from ..common.errors import ExtractionError, FetchError, QueueInvariantError, TransientFetchError
from ..common.models import LifecycleEvent, LifecycleKind, Outcome, RecordMessage
from ..common.utils import setup_logging
from ..frontier.request_queue import RequestQueue
from .fetcher import PageFetcher
from .routes import classify

logger = logging.getLogger(__name__)

# Worker process exit codes
EXIT_OK = 0
EXIT_CRASH = 1
EXIT_QUEUE_INVARIANT = 3


class CrawlerNode:
    """
    One worker's crawl loop.

    Only the thread calling start() talks to the request queue; the thread
    pool just fetches and routes pages, at most ``max_concurrency`` at a time.
    """

    def __init__(self, worker_index, request_queue, fetcher, channel,
                 max_concurrency=DEFAULT_MAX_CONCURRENCY,
                 lease_duration=DEFAULT_LEASE_DURATION,
                 max_request_retries=DEFAULT_MAX_REQUEST_RETRIES,
                 max_pagination_depth=None, labels=None,
                 retry_backoff=RETRY_BACKOFF,
                 idle_poll_min=IDLE_POLL_MIN, idle_poll_max=IDLE_POLL_MAX):
        self.worker_index = worker_index
        self.worker_id = f"worker-{worker_index}-{uuid.uuid4().hex[:8]}"
        self.request_queue = request_queue
        self.fetcher = fetcher
        self.channel = channel
        self.max_concurrency = max_concurrency
        self.lease_duration = lease_duration
        self.max_request_retries = max_request_retries
        self.max_pagination_depth = max_pagination_depth
        self.labels = labels
        self.retry_backoff = retry_backoff
        self.idle_poll_min = idle_poll_min
        self.idle_poll_max = idle_poll_max

        self.stats = Counter()
        self.running = False

    def start(self):
        """Run until the queue is finished or stop() is called."""
        logger.info(f"Starting crawler node {self.worker_id} (max concurrency: {self.max_concurrency})")
        self.running = True
        in_flight = {}  # future -> request
        idle_wait = self.idle_poll_min

        with ThreadPoolExecutor(max_workers=self.max_concurrency,
                                thread_name_prefix=f"worker-{self.worker_index}") as executor:
            while True:
                while self.running and len(in_flight) < self.max_concurrency:
                    request = self.request_queue.lease(
                        self.worker_id, self.lease_duration, labels=self.labels
                    )
                    if request is None:
                        break
                    logger.info(f"Processing {request.label.value}: {request.url}")
                    in_flight[executor.submit(self._handle_request, request)] = request

                if in_flight:
                    idle_wait = self.idle_poll_min
                    done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                    for future in done:
                        self._complete(in_flight.pop(future), future)
                    continue

                if not self.running:
                    logger.info("Stop requested and nothing in flight")
                    break

                if self.request_queue.is_finished(labels=self.labels):
                    logger.info("Request queue is finished")
                    break

                # Another worker may still be enqueueing category pages
                logger.debug(f"No requests available, waiting {idle_wait:.1f}s")
                time.sleep(idle_wait)
                idle_wait = min(idle_wait * 2, self.idle_poll_max)

        logger.info(f"Crawler node {self.worker_id} finished: {dict(self.stats)}")
        return self.stats

    def stop(self):
        """Stop leasing; requests already in flight still finish."""
        logger.info(f"Stopping crawler node: {self.worker_id}")
        self.running = False

    def _handle_request(self, request):
        """Fetch and route one request, retrying transient fetch errors."""
        attempt = 0
        while True:
            try:
                page = self.fetcher.render(request.url)
                break
            except TransientFetchError as e:
                attempt += 1
                if attempt > self.max_request_retries:
                    raise
                logger.warning(f"Retrying {request.url} ({attempt}/{self.max_request_retries}): {e}")
                time.sleep(self.retry_backoff * attempt)

        return classify(request, page, max_pagination_depth=self.max_pagination_depth)

    def _complete(self, request, future):
        try:
            result = future.result()
        except TransientFetchError as e:
            logger.error(f"Giving up on {request.url} after {self.max_request_retries} retries: {e}")
            self._resolve(request, Outcome.FAILED, e)
            return
        except ExtractionError as e:
            logger.warning(f"Extraction failed for {e.url}: {e}")
            self._resolve(request, Outcome.FAILED, e)
            return
        except FetchError as e:
            logger.error(f"Could not render {request.url}: {e}")
            self._resolve(request, Outcome.FAILED, e)
            return
        except Exception as e:
            logger.error(f"Error processing {request.url}: {e}")
            logger.error(traceback.format_exc())
            self._resolve(request, Outcome.FAILED, e)
            return

        if result.requests:
            added = self.request_queue.enqueue_many(result.requests)
            self.stats['enqueued'] += added
            logger.info(f"Enqueued {added} new of {len(result.requests)} links from {request.url}")

        if result.record is not None:
            logger.debug(f"Saving data: {request.url}")
            self.channel.put(RecordMessage(self.worker_index, result.record))
            self.stats['records'] += 1

        self._resolve(request, Outcome.RESOLVED)

    def _resolve(self, request, outcome, error=None):
        self.request_queue.resolve(request.request_id, outcome, self.worker_id, error=error)
        self.stats[outcome.value] += 1


def _install_signal_handlers(crawler):
    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, finishing in-flight requests...")
        crawler.stop()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)


def run_worker(worker_index, settings, channel):
    """Entry point of a worker process spawned by the master."""
    os.environ['CRAWLER_ROLE'] = 'worker'
    os.environ['WORKER_INDEX'] = str(worker_index)
    setup_logging(f"Worker {worker_index}", settings.log_level, settings.log_file)

    channel.put(LifecycleEvent(worker_index, LifecycleKind.ONLINE, pid=os.getpid()))
    fetcher = None
    try:
        request_queue = RequestQueue.open(
            settings.queue_name,
            region_name=settings.region_name,
            endpoint_url=settings.endpoint_url
        )
        fetcher = PageFetcher(timeout=settings.request_timeout)
        crawler = CrawlerNode(
            worker_index,
            request_queue,
            fetcher,
            channel,
            max_concurrency=settings.max_concurrency,
            lease_duration=settings.lease_duration,
            max_request_retries=settings.max_request_retries,
            max_pagination_depth=settings.max_pagination_depth,
            labels=settings.labels
        )
        _install_signal_handlers(crawler)
        channel.put(LifecycleEvent(worker_index, LifecycleKind.RUNNING, pid=os.getpid()))
        crawler.start()
    except QueueInvariantError as e:
        logger.critical(f"Request queue invariant violated: {e}")
        sys.exit(EXIT_QUEUE_INVARIANT)
    except Exception as e:
        logger.error(f"Fatal error in crawler node: {e}")
        logger.error(traceback.format_exc())
        sys.exit(EXIT_CRASH)
    finally:
        if fetcher is not None:
            fetcher.close()
