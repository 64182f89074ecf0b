"""
Configuration settings for the distributed store crawler.
"""
import os
from dataclasses import dataclass
from typing import Optional, Tuple

# Shared request queue (DynamoDB table name)
REQUEST_QUEUE_NAME = 'shop-urls'

# Start page of the store
START_URL = 'https://warehouse-theme-metal.myshopify.com/collections'

# AWS region and optional endpoint (e.g. DynamoDB Local)
AWS_REGION = os.environ.get('AWS_REGION', 'us-east-1')
DYNAMODB_ENDPOINT_URL = os.environ.get('DYNAMODB_ENDPOINT_URL') or None

# Fetcher settings
CRAWLER_USER_AGENT = 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36'
REQUEST_TIMEOUT = 30  # seconds
RETRY_HTTP_CODES = (408, 429, 500, 502, 503, 504)

# Worker settings
DEFAULT_WORKERS = 2
DEFAULT_MAX_CONCURRENCY = 5  # in-flight renders per worker
DEFAULT_LEASE_DURATION = 300  # seconds, must exceed render timeout * retries
DEFAULT_MAX_REQUEST_RETRIES = 3
RETRY_BACKOFF = 1.0  # seconds, multiplied by the attempt number

# Idle polling while other workers may still enqueue
IDLE_POLL_MIN = 0.5  # seconds
IDLE_POLL_MAX = 5.0  # seconds

# Master settings
CHANNEL_POLL_INTERVAL = 0.5  # seconds

# Result storage
DATASET_DIR = os.path.join('storage', 'datasets', 'default')
RESULT_PREFIX = 'records'


@dataclass
class CrawlSettings:
    """Values the master hands to every worker process."""
    queue_name: str = REQUEST_QUEUE_NAME
    workers: int = DEFAULT_WORKERS
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    lease_duration: float = DEFAULT_LEASE_DURATION
    max_request_retries: int = DEFAULT_MAX_REQUEST_RETRIES
    max_pagination_depth: Optional[int] = None
    labels: Optional[Tuple[str, ...]] = None
    region_name: str = AWS_REGION
    endpoint_url: Optional[str] = DYNAMODB_ENDPOINT_URL
    request_timeout: float = REQUEST_TIMEOUT
    log_level: str = 'INFO'
    log_file: Optional[str] = None
