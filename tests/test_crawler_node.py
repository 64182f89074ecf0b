"""
Tests for the worker crawl loop against the in-memory fixture store.
"""
import queue
import unittest

from store_crawler.common.errors import QueueInvariantError, RenderError, TransientFetchError
from store_crawler.common.models import CrawlRequest, Label, Outcome, RecordMessage
from store_crawler.crawler.crawler_node import CrawlerNode
from store_crawler.frontier.request_queue import RequestQueue

from tests.helpers import MKE_440, SHOP, AwsTestCase, FakeClock, FakeFetcher, fixture_store

QUEUE = 'test-shop-urls'
LEASE = 300
START = f"{SHOP}/collections"

EXPECTED_RECORDS = {
    (f"{SHOP}/products/sony-wh-1000", 'sony', 'WH-1000', 'S1000', 1299.0, True),
    (f"{SHOP}/products/bose-qc-45", 'bose', 'QC 45', 'B45', 329.0, False),
    (f"{SHOP}/products/jbl-tune-500", 'jbl', 'Tune 500', 'J500', 49.95, True),
    (MKE_440, 'sennheiser', 'MKE 440', '700440', 549.95, True),
}


def drain(channel):
    messages = []
    while not channel.empty():
        messages.append(channel.get_nowait())
    return messages


def record_set(messages):
    return {
        (m.record.url, m.record.manufacturer, m.record.title, m.record.sku,
         m.record.current_price, m.record.available_in_stock)
        for m in messages if isinstance(m, RecordMessage)
    }


class CrawlerNodeTestCase(AwsTestCase):
    def setUp(self):
        super().setUp()
        self.clock = FakeClock()
        self.queue = RequestQueue.initialize(QUEUE, fresh=True, clock=self.clock)
        self.channel = queue.Queue()

    def make_node(self, fetcher, index=0, **kwargs):
        options = dict(max_concurrency=3, lease_duration=LEASE, retry_backoff=0,
                       idle_poll_min=0.01, idle_poll_max=0.02)
        options.update(kwargs)
        return CrawlerNode(index, RequestQueue.open(QUEUE, clock=self.clock), fetcher, self.channel, **options)

    def seed(self, url=START, label=Label.UNLABELED):
        self.queue.enqueue(CrawlRequest(url, label))


class TestFullCrawl(CrawlerNodeTestCase):
    def test_crawls_whole_store(self):
        self.seed()
        fetcher = FakeFetcher(fixture_store())
        stats = self.make_node(fetcher).start()

        self.assertEqual(record_set(drain(self.channel)), EXPECTED_RECORDS)
        self.assertTrue(self.queue.is_finished())
        # start + 4 category pages + 5 distinct products
        self.assertEqual(self.queue.stats(), {'available': 0, 'locked': 0, 'resolved': 9, 'failed': 1})
        self.assertEqual(stats['records'], 4)
        self.assertEqual(stats['failed'], 1)
        # the product listed in two categories is fetched once
        self.assertEqual(fetcher.calls.count(f"{SHOP}/products/sony-wh-1000"), 1)

    def test_extraction_failure_is_recorded(self):
        broken = f"{SHOP}/products/marshall-broken"
        self.seed(broken, Label.DETAIL)
        self.make_node(FakeFetcher(fixture_store())).start()

        entry = self.queue.get_entry(CrawlRequest(broken).request_id)
        self.assertEqual(entry['state'], 'failed')
        self.assertIn('Missing product price', entry['error_message'])
        self.assertEqual(drain(self.channel), [])

    def test_label_restricted_worker_leaves_detail_pages(self):
        self.seed()
        fetcher = FakeFetcher(fixture_store())
        self.make_node(fetcher, labels=(Label.UNLABELED, Label.CATEGORY)).start()

        self.assertEqual(drain(self.channel), [])
        self.assertEqual(self.queue.stats()['available'], 5)
        self.assertFalse(any('/products/' in url for url in fetcher.calls))


class TestRetries(CrawlerNodeTestCase):
    def test_transient_error_is_retried(self):
        self.seed(MKE_440, Label.DETAIL)
        fetcher = FakeFetcher(fixture_store(), failures={
            MKE_440: [TransientFetchError(MKE_440, 'timeout'), TransientFetchError(MKE_440, 'HTTP 503')]
        })
        self.make_node(fetcher, max_request_retries=3).start()

        self.assertEqual(fetcher.calls.count(MKE_440), 3)
        self.assertEqual(len(record_set(drain(self.channel))), 1)
        self.assertEqual(self.queue.stats()['resolved'], 1)

    def test_retries_are_bounded(self):
        self.seed(MKE_440, Label.DETAIL)
        fetcher = FakeFetcher(fixture_store(), failures={
            MKE_440: [TransientFetchError(MKE_440, 'timeout')] * 5
        })
        self.make_node(fetcher, max_request_retries=2).start()

        self.assertEqual(fetcher.calls.count(MKE_440), 3)
        self.assertEqual(self.queue.stats()['failed'], 1)
        self.assertEqual(drain(self.channel), [])

    def test_render_error_is_not_retried(self):
        missing = f"{SHOP}/products/gone"
        self.seed(missing, Label.DETAIL)
        fetcher = FakeFetcher(fixture_store())
        self.make_node(fetcher).start()

        self.assertEqual(fetcher.calls, [missing])
        self.assertEqual(self.queue.stats()['failed'], 1)

    def test_unexpected_render_exception_fails_request(self):
        self.seed(MKE_440, Label.DETAIL)
        fetcher = FakeFetcher(fixture_store(), failures={MKE_440: [RuntimeError('browser crashed')]})
        self.make_node(fetcher).start()

        self.assertEqual(self.queue.stats()['failed'], 1)


class TestRecovery(CrawlerNodeTestCase):
    def test_crashed_worker_lease_is_finished_by_another(self):
        # Crash-free reference run
        self.seed()
        self.make_node(FakeFetcher(fixture_store())).start()
        reference = record_set(drain(self.channel))

        # Same store again; worker 0 dies holding the lease on a detail page
        self.queue = RequestQueue.initialize(QUEUE, fresh=True, clock=self.clock)
        self.seed(MKE_440, Label.DETAIL)
        crashed = RequestQueue.open(QUEUE, clock=self.clock)
        self.assertIsNotNone(crashed.lease('worker-0-dead', LEASE))
        self.seed()

        self.clock.advance(LEASE + 1)
        self.make_node(FakeFetcher(fixture_store()), index=1).start()

        self.assertEqual(record_set(drain(self.channel)), reference)
        entry = self.queue.get_entry(CrawlRequest(MKE_440).request_id)
        self.assertEqual(entry['state'], 'resolved')
        self.assertEqual(entry['lease_count'], 2)
        self.assertTrue(self.queue.is_finished())

    def test_resolving_a_superseded_lease_is_fatal(self):
        self.seed(MKE_440, Label.DETAIL)
        node = self.make_node(FakeFetcher(fixture_store()))
        request = node.request_queue.lease(node.worker_id, LEASE)

        self.clock.advance(LEASE + 1)
        RequestQueue.open(QUEUE, clock=self.clock).lease('worker-9', LEASE)

        with self.assertRaises(QueueInvariantError):
            node._resolve(request, Outcome.RESOLVED)


class TestStop(CrawlerNodeTestCase):
    def test_stop_prevents_new_leases(self):
        self.seed()
        fetcher = FakeFetcher(fixture_store())
        node = self.make_node(fetcher, max_concurrency=1)

        original_complete = node._complete

        def complete_then_stop(request, future):
            original_complete(request, future)
            node.stop()

        node._complete = complete_then_stop
        node.start()

        self.assertEqual(fetcher.calls, [START])
        stats = self.queue.stats()
        self.assertEqual(stats['resolved'], 1)
        self.assertEqual(stats['locked'], 0)
        self.assertEqual(stats['available'], 3)


if __name__ == '__main__':
    unittest.main()
