"""
Main script to run the distributed store crawler.

    store-crawler crawl    # fresh queue, full crawl with the worker pool
    store-crawler prepare  # fresh queue, fill it with detail pages only
    store-crawler scrape   # work through an existing queue with the pool
"""
import argparse
import logging
import sys

from .common.config import (
    DATASET_DIR, DEFAULT_LEASE_DURATION, DEFAULT_MAX_CONCURRENCY,
    DEFAULT_MAX_REQUEST_RETRIES, DEFAULT_WORKERS, REQUEST_QUEUE_NAME,
    START_URL, CrawlSettings
)
from .common.errors import CrawlFailedError
from .common.utils import setup_logging
from .master.master_node import MasterNode
from .master.result_sink import DatasetSink, S3ResultSink

logger = logging.getLogger(__name__)


def build_parser():
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('--queue-name', default=REQUEST_QUEUE_NAME,
                        help='DynamoDB table holding the shared request queue')
    common.add_argument('--start-url', nargs='+', default=[START_URL],
                        help='Start page(s) of the store')
    common.add_argument('--workers', type=int, default=DEFAULT_WORKERS,
                        help='Number of worker processes')
    common.add_argument('--max-concurrency', type=int, default=DEFAULT_MAX_CONCURRENCY,
                        help='Pages fetched at once by each worker')
    common.add_argument('--lease-duration', type=float, default=DEFAULT_LEASE_DURATION,
                        help='Seconds a leased request stays locked to one worker')
    common.add_argument('--max-retries', type=int, default=DEFAULT_MAX_REQUEST_RETRIES,
                        help='Retries of a request after transient fetch errors')
    common.add_argument('--max-pagination-depth', type=int, default=None,
                        help='Stop following "next page" links after this many pages')
    common.add_argument('--dataset-dir', default=DATASET_DIR,
                        help='Directory for extracted records')
    common.add_argument('--results-bucket', default=None,
                        help='Store records in this S3 bucket instead of --dataset-dir')
    common.add_argument('--log-level', default='INFO')
    common.add_argument('--log-file', default=None)

    parser = argparse.ArgumentParser(description='Run the distributed store crawler')
    subparsers = parser.add_subparsers(dest='command', required=True)
    subparsers.add_parser('crawl', parents=[common],
                          help='Crawl the whole store with a fresh queue')
    subparsers.add_parser('prepare', parents=[common],
                          help='Fill a fresh queue with detail pages without scraping them')
    subparsers.add_parser('scrape', parents=[common],
                          help='Scrape whatever is left in the existing queue')
    return parser


def build_settings(args):
    return CrawlSettings(
        queue_name=args.queue_name,
        workers=args.workers,
        max_concurrency=args.max_concurrency,
        lease_duration=args.lease_duration,
        max_request_retries=args.max_retries,
        max_pagination_depth=args.max_pagination_depth,
        log_level=args.log_level,
        log_file=args.log_file
    )


def build_sink(args):
    if args.results_bucket:
        return S3ResultSink(args.results_bucket)
    return DatasetSink(args.dataset_dir, purge=args.command == 'crawl')


def main(argv=None):
    """Main function to run the system."""
    args = build_parser().parse_args(argv)
    setup_logging('Master', args.log_level, args.log_file)

    settings = build_settings(args)
    master = MasterNode(settings, build_sink(args))

    try:
        if args.command == 'crawl':
            summary = master.start_crawl(args.start_url, fresh=True)
        elif args.command == 'prepare':
            summary = master.prepare_queue(args.start_url)
        else:
            summary = master.start_crawl([], fresh=False)
    except CrawlFailedError as e:
        logger.error(f"Crawl failed: {e.reason}")
        return 1

    logger.info(
        f"Done: {summary.resolved} requests resolved, {summary.failed} failed, "
        f"{summary.records} records produced"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
