"""
Utility functions for the distributed store crawler.
"""
from urllib.parse import urlparse, urlunparse, parse_qsl, urlencode
from decimal import Decimal
import hashlib
import logging


def get_domain(url):
    """Extract the domain from a URL."""
    parsed = urlparse(url)
    return parsed.netloc.lower()

def normalize_url(url):
    """
    Build the identity key of a URL.

    Lower-cases scheme and host, drops the fragment and a trailing slash,
    and sorts the query parameters so equivalent URLs collapse to one key.
    """
    if not url:
        return None

    # Add scheme if missing
    if not url.startswith(('http://', 'https://')):
        url = f"https://{url}"

    parsed = urlparse(url.strip())

    # Normalize path (remove trailing slash)
    path = parsed.path
    if path.endswith('/') and len(path) > 1:
        path = path[:-1]
    if not path:
        path = '/'

    query = urlencode(sorted(parse_qsl(parsed.query, keep_blank_values=True)))

    return urlunparse((
        parsed.scheme.lower(),
        parsed.netloc.lower(),
        path,
        parsed.params,
        query,
        ''
    ))

def request_id_for(unique_key):
    """Stable queue item key for an identity key."""
    return hashlib.md5(unique_key.encode()).hexdigest()

def last_path_segment(url):
    """Return the final non-empty path segment of a URL."""
    path = urlparse(url).path.rstrip('/')
    return path.split('/')[-1]

def to_decimal(val):
    """DynamoDB numbers must be Decimals."""
    return Decimal(str(val))

def setup_logging(tag, level='INFO', log_file=None):
    """Configure the root logger for one process of the crawl."""
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=f'%(asctime)s [%(levelname)s] [{tag}] %(message)s',
        handlers=handlers,
        force=True
    )
    # botocore is chatty at DEBUG
    logging.getLogger('botocore').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)
