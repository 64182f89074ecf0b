"""
Master Node for the distributed store crawler.
Responsible for initializing the shared request queue, spawning the worker
processes, storing the records they stream back and reporting the outcome.
"""
import logging
import multiprocessing
import queue
import traceback

from ..common.config import CHANNEL_POLL_INTERVAL, CrawlSettings
from ..common.errors import CrawlFailedError
from ..common.models import (
    CrawlRequest, CrawlSummary, EntryState, Label, LifecycleEvent, LifecycleKind,
    RecordMessage, WorkerState, WorkerStatus
)
from ..crawler.crawler_node import EXIT_OK, EXIT_QUEUE_INVARIANT, CrawlerNode, run_worker
from ..crawler.fetcher import PageFetcher
from ..frontier.request_queue import RequestQueue

logger = logging.getLogger(__name__)

PREPARE_LABELS = (Label.UNLABELED, Label.CATEGORY)


class MasterNode:
    """
    Runs one crawl: queue setup, a fixed pool of worker processes, and the
    relay of worker messages into the result sink.
    """

    def __init__(self, settings=None, sink=None, worker_target=run_worker,
                 queue_factory=None, fetcher_factory=None, mp_context=None,
                 poll_interval=CHANNEL_POLL_INTERVAL):
        self.settings = settings or CrawlSettings()
        self.sink = sink
        self.worker_target = worker_target
        self.queue_factory = queue_factory or self._initialize_queue
        self.fetcher_factory = fetcher_factory or (lambda: PageFetcher(timeout=self.settings.request_timeout))
        # Workers must not inherit the master's boto3 clients
        self.mp_context = mp_context or multiprocessing.get_context('spawn')
        self.poll_interval = poll_interval

        self.processes = {}  # worker index -> Process
        self.workers = {}  # worker index -> WorkerStatus
        self.records = 0

    def _initialize_queue(self, fresh):
        return RequestQueue.initialize(
            self.settings.queue_name,
            fresh=fresh,
            region_name=self.settings.region_name,
            endpoint_url=self.settings.endpoint_url
        )

    # Crawl entry points
    def start_crawl(self, start_urls, fresh=True):
        """
        Seed the queue and run the worker pool until every worker has exited.

        The queue is fully initialized (and cleared when ``fresh``) before the
        first worker starts. Raises CrawlFailedError when a worker reports a
        queue invariant violation or the pool stops with work still pending.
        """
        logger.info(f"Starting crawl with {self.settings.workers} workers (fresh queue: {fresh})")
        request_queue = self.queue_factory(fresh)
        self._seed(request_queue, start_urls)

        self._run_workers()
        return self._finish(request_queue)

    def prepare_queue(self, start_urls):
        """
        Walk the start and category pages in this process, leaving every
        detail page in the queue for a later scrape with the worker pool.
        """
        logger.info("Preparing request queue from start and category pages")
        request_queue = self.queue_factory(True)
        self._seed(request_queue, start_urls)

        channel = queue.Queue()
        fetcher = self.fetcher_factory()
        crawler = CrawlerNode(
            0,
            request_queue,
            fetcher,
            channel,
            max_concurrency=self.settings.max_concurrency,
            lease_duration=self.settings.lease_duration,
            max_request_retries=self.settings.max_request_retries,
            max_pagination_depth=self.settings.max_pagination_depth,
            labels=PREPARE_LABELS
        )
        try:
            crawler.start()
        finally:
            fetcher.close()

        while not channel.empty():
            self._dispatch(channel.get_nowait())

        stats = request_queue.stats()
        summary = self._summarize(stats, request_queue.is_finished(labels=PREPARE_LABELS))
        logger.info(f"Queue prepared: {summary.pending} detail request(s) waiting, {summary.failed} failed")
        return summary

    def _seed(self, request_queue, start_urls):
        added = request_queue.enqueue_many(
            CrawlRequest(url=url, label=Label.UNLABELED) for url in start_urls
        )
        logger.info(f"Seeded {added} start URL(s)")

    # Worker pool
    def _run_workers(self):
        channel = self.mp_context.Queue()
        for index in range(self.settings.workers):
            process = self.mp_context.Process(
                target=self.worker_target,
                args=(index, self.settings, channel),
                name=f"crawler-worker-{index}"
            )
            process.start()
            self.processes[index] = process
            self.workers[index] = WorkerStatus(index=index, pid=process.pid)
            logger.info(f"Spawned worker {index} (pid {process.pid})")

        try:
            self._relay(channel)
        except KeyboardInterrupt:
            logger.info("Received keyboard interrupt, letting workers finish in-flight requests...")
            self.stop()
            self._relay(channel)
        finally:
            for process in self.processes.values():
                if process.is_alive():
                    process.terminate()
                process.join()

    def _relay(self, channel):
        """Forward worker messages until every worker has exited."""
        while True:
            try:
                message = channel.get(timeout=self.poll_interval)
            except queue.Empty:
                self._reap()
                if all(status.state is WorkerState.EXITED for status in self.workers.values()):
                    self._drain(channel)
                    return
                continue
            self._dispatch(message)

    def _drain(self, channel):
        """Dispatch whatever workers sent between the last poll and their exit."""
        drained = 0
        while True:
            try:
                message = channel.get_nowait()
            except queue.Empty:
                break
            self._dispatch(message)
            drained += 1
        if drained:
            logger.debug(f"Dispatched {drained} message(s) sent just before the workers exited")

    def _dispatch(self, message):
        if isinstance(message, RecordMessage):
            logger.debug(f"Worker {message.worker_index} sent data: {message.record.url}")
            try:
                self.sink.append(message.record.to_dict())
            except Exception as e:
                logger.error(f"Error storing record {message.record.url}: {e}")
                logger.error(traceback.format_exc())
                raise
            self.records += 1
        elif isinstance(message, LifecycleEvent):
            self._on_lifecycle(message)
        else:
            logger.warning(f"Ignoring unexpected message from worker: {message!r}")

    def _on_lifecycle(self, event):
        status = self.workers.get(event.worker_index)
        if status is None or status.state is WorkerState.EXITED:
            return

        if event.kind is LifecycleKind.ONLINE:
            status.state = WorkerState.ONLINE
            status.pid = event.pid
            logger.info(f"Process {event.worker_index} is online.")
        elif event.kind is LifecycleKind.RUNNING:
            status.state = WorkerState.RUNNING
            logger.info(f"Process {event.worker_index} is crawling.")
        elif event.kind is LifecycleKind.EXIT:
            status.state = WorkerState.EXITED
            status.exit_code = event.exit_code
            status.signal = event.signal
            message = f"Process {event.worker_index} exited with code {event.exit_code} and signal {event.signal}"
            if event.exit_code == EXIT_OK:
                logger.info(message)
            elif event.exit_code == EXIT_QUEUE_INVARIANT:
                logger.critical(f"{message}: request queue invariant violated, not restarting")
            else:
                logger.warning(f"{message}: its leased requests will be retried once their locks expire")

    def _reap(self):
        for index, process in self.processes.items():
            if self.workers[index].state is WorkerState.EXITED or process.is_alive():
                continue
            process.join()
            code = process.exitcode
            exit_code, signal = (None, -code) if code is not None and code < 0 else (code, None)
            self._on_lifecycle(LifecycleEvent(
                index, LifecycleKind.EXIT, pid=process.pid, exit_code=exit_code, signal=signal
            ))

    def stop(self):
        """Ask every live worker to stop leasing and finish what it holds."""
        for index, process in self.processes.items():
            if process.is_alive():
                logger.info(f"Stopping worker {index}")
                process.terminate()

    # Completion
    def _summarize(self, stats, finished):
        return CrawlSummary(
            resolved=stats[EntryState.RESOLVED.value],
            failed=stats[EntryState.FAILED.value],
            pending=stats[EntryState.AVAILABLE.value] + stats[EntryState.LOCKED.value],
            records=self.records,
            finished=finished,
            workers=[self.workers[index] for index in sorted(self.workers)]
        )

    def _finish(self, request_queue):
        summary = self._summarize(request_queue.stats(), request_queue.is_finished())
        logger.info(
            f"Requests resolved: {summary.resolved}, failed: {summary.failed}, "
            f"pending: {summary.pending}; records stored: {summary.records}"
        )

        violated = [w.index for w in summary.workers if w.exit_code == EXIT_QUEUE_INVARIANT]
        if violated:
            raise CrawlFailedError(f"Request queue invariant violated in worker(s) {violated}", summary)
        if not summary.finished:
            raise CrawlFailedError(
                f"All workers exited with {summary.pending} request(s) still pending", summary
            )

        logger.info("Crawling complete!")
        return summary
