"""
Shared fixtures for the store crawler tests: a tiny fake store, a fetcher
that serves it from memory, a controllable clock and a moto-backed base case.
"""
import os
import threading
import unittest

from moto import mock_aws
from scrapy.http import HtmlResponse

from store_crawler.common.errors import RenderError

SHOP = 'https://warehouse-theme-metal.myshopify.com'
MKE_440 = f"{SHOP}/products/sennheiser-mke-440-professional-stereo-shotgun-microphone-mke-440"


def make_page(url, html):
    return HtmlResponse(url=url, body=html.encode('utf-8'), encoding='utf-8')


def start_page(category_paths):
    links = '\n'.join(
        f'<a class="collection-block-item" href="{path}">{path}</a>' for path in category_paths
    )
    return f"""
    <html><body>
      <header><a href="/">Home</a><a href="/cart">Cart</a></header>
      <div class="collection-list">{links}</div>
    </body></html>
    """


def category_page(product_paths, next_path=None):
    items = '\n'.join(
        f'<div class="product-item"><a href="{path}" class="product-item__image-wrapper">'
        f'<img src="x.jpg"></a><div class="product-item__info">{path}</div></div>'
        for path in product_paths
    )
    pagination = ''
    if next_path:
        pagination = f'<nav class="pagination"><a class="pagination__next" href="{next_path}">Next</a></nav>'
    return f"""
    <html><body>
      <div class="product-list">{items}</div>
      {pagination}
    </body></html>
    """


def detail_page(title='MKE 440', sku='700440', price='$549.95', in_stock=True):
    title_html = f'<h1 class="product-meta__title heading h1">{title}</h1>' if title else ''
    sku_html = (
        f'<span class="product-meta__sku">SKU: <span class="product-meta__sku-number">{sku}</span></span>'
        if sku else ''
    )
    price_html = ''
    if price:
        price_html = (
            f'<span class="price price--highlight"><span class="visually-hidden">Sale price</span>{price}</span>'
            '<span class="price price--compare"><span class="visually-hidden">Regular price</span>$9,999.00</span>'
        )
    stock = 'In stock' if in_stock else 'Sold out'
    return f"""
    <html><body>
      <div class="product-meta">{title_html}<div class="product-meta__reference">{sku_html}</div></div>
      <div class="price-list">{price_html}</div>
      <span class="product-form__inventory inventory">{stock}</span>
    </body></html>
    """


def fixture_store():
    """
    Start page -> 3 categories. Headphones paginates over two pages, one
    product is listed in two categories and one detail page has no price.
    """
    pages = {
        f"{SHOP}/collections": start_page([
            '/collections/headphones', '/collections/microphones', '/collections/speakers'
        ]),
        f"{SHOP}/collections/headphones": category_page(
            ['/products/sony-wh-1000', '/products/bose-qc-45'],
            next_path='/collections/headphones?page=2'
        ),
        f"{SHOP}/collections/headphones?page=2": category_page(['/products/jbl-tune-500']),
        f"{SHOP}/collections/microphones": category_page([
            '/products/sennheiser-mke-440-professional-stereo-shotgun-microphone-mke-440',
            '/products/sony-wh-1000'
        ]),
        f"{SHOP}/collections/speakers": category_page(['/products/marshall-broken']),
        f"{SHOP}/products/sony-wh-1000": detail_page('WH-1000', 'S1000', '$1,299.00'),
        f"{SHOP}/products/bose-qc-45": detail_page('QC 45', 'B45', '$329.00', in_stock=False),
        f"{SHOP}/products/jbl-tune-500": detail_page('Tune 500', 'J500', '$49.95'),
        MKE_440: detail_page(),
        f"{SHOP}/products/marshall-broken": detail_page('Broken', 'M0', price=None),
    }
    return pages


class FakeFetcher:
    """Serves pages from a dict; ``failures`` maps a URL to errors raised first."""

    def __init__(self, pages, failures=None):
        self.pages = pages
        self.failures = {url: list(errors) for url, errors in (failures or {}).items()}
        self.calls = []
        self.lock = threading.Lock()
        self.closed = False

    def render(self, url):
        with self.lock:
            self.calls.append(url)
            pending = self.failures.get(url)
            if pending:
                raise pending.pop(0)
        if url not in self.pages:
            raise RenderError(url, "HTTP 404")
        return make_page(url, self.pages[url])

    def close(self):
        self.closed = True


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class AwsTestCase(unittest.TestCase):
    """Runs every test against moto's in-memory AWS."""

    def setUp(self):
        for name, value in {
            'AWS_ACCESS_KEY_ID': 'testing',
            'AWS_SECRET_ACCESS_KEY': 'testing',
            'AWS_SECURITY_TOKEN': 'testing',
            'AWS_SESSION_TOKEN': 'testing',
            'AWS_DEFAULT_REGION': 'us-east-1',
        }.items():
            os.environ[name] = value
        self.mock_aws = mock_aws()
        self.mock_aws.start()
        self.addCleanup(self.mock_aws.stop)
