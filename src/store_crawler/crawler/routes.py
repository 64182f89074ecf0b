"""
Routes for the store crawler.

Each label has one handler that turns a fetched page into new requests
and/or a product record:

    UNLABELED (start page) -> CATEGORY pages
    CATEGORY               -> DETAIL pages, plus the next CATEGORY page
    DETAIL                 -> one ProductRecord
"""
import logging

from ..common.errors import ExtractionError
from ..common.models import CrawlRequest, Label, ProductRecord, RouteResult
from ..common.utils import get_domain, last_path_segment

logger = logging.getLogger(__name__)

CATEGORY_SELECTOR = '.collection-block-item'
PRODUCT_SELECTOR = '.product-item > a'
NEXT_PAGE_SELECTOR = 'a.pagination__next'

TITLE_SELECTOR = '.product-meta h1'
SKU_SELECTOR = 'span.product-meta__sku-number'
PRICE_SELECTOR = 'span.price'
IN_STOCK_SELECTOR = 'span.product-form__inventory'
IN_STOCK_TEXT = 'In stock'
CURRENCY_SYMBOL = '$'


def collect_links(page, selector):
    """
    Absolute hrefs of the elements matching ``selector`` that stay on the
    page's own host, in document order and without repeats.
    """
    domain = get_domain(page.url)
    links = []
    for href in page.css(selector).xpath('@href').getall():
        url = page.urljoin(href.strip())
        if get_domain(url) != domain:
            logger.debug(f"Skipping off-site link {url}")
            continue
        if url not in links:
            links.append(url)
    return links


def _element_text(element):
    """Whole text content of an element, whitespace collapsed."""
    return ' '.join(element.xpath('string()').get().split())


def _text(selection):
    """Text of the first element of a selection, or None."""
    if not selection:
        return None
    return _element_text(selection[0])


def parse_price(text):
    """'Sale price$1,549.95' -> 1549.95"""
    if not text or CURRENCY_SYMBOL not in text:
        return None
    raw = text.split(CURRENCY_SYMBOL)[1].replace(',', '').strip()
    try:
        return float(raw)
    except ValueError:
        return None


def handle_start(request, page, max_pagination_depth=None):
    logger.debug(f"Enqueueing categories from page: {request.url}")
    return RouteResult(requests=[
        CrawlRequest(url=url, label=Label.CATEGORY)
        for url in collect_links(page, CATEGORY_SELECTOR)
    ])


def handle_category(request, page, max_pagination_depth=None):
    logger.debug(f"Enqueueing products and pagination for: {request.url}")
    requests = [
        CrawlRequest(url=url, label=Label.DETAIL)
        for url in collect_links(page, PRODUCT_SELECTOR)
    ]

    next_pages = collect_links(page, NEXT_PAGE_SELECTOR)
    if next_pages:
        depth = request.depth + 1
        if max_pagination_depth is not None and depth > max_pagination_depth:
            logger.warning(f"Not following page {depth} of {request.url}: pagination limit {max_pagination_depth}")
        else:
            requests.append(CrawlRequest(url=next_pages[0], label=Label.CATEGORY, depth=depth))

    return RouteResult(requests=requests)


def handle_detail(request, page, max_pagination_depth=None):
    logger.debug(f"Extracting data: {request.url}")
    manufacturer = last_path_segment(request.url).split('-')[0]

    title = _text(page.css(TITLE_SELECTOR))
    if not title:
        raise ExtractionError(request.url, "Missing product title")

    sku = _text(page.css(SKU_SELECTOR))
    if not sku:
        raise ExtractionError(request.url, "Missing product SKU")

    price_texts = [_element_text(element) for element in page.css(PRICE_SELECTOR)]
    price_text = next((t for t in price_texts if t and CURRENCY_SYMBOL in t), None)
    if price_text is None:
        raise ExtractionError(request.url, "Missing product price")
    price = parse_price(price_text)
    if price is None:
        raise ExtractionError(request.url, f"Unparseable price '{price_text}'")

    in_stock = any(
        IN_STOCK_TEXT in _element_text(element)
        for element in page.css(IN_STOCK_SELECTOR)
    )

    return RouteResult(record=ProductRecord(
        url=request.url,
        manufacturer=manufacturer,
        title=title,
        sku=sku,
        current_price=price,
        available_in_stock=in_stock
    ))


ROUTES = {
    Label.UNLABELED: handle_start,
    Label.CATEGORY: handle_category,
    Label.DETAIL: handle_detail,
}


def classify(request, page, max_pagination_depth=None):
    """Run the handler for ``request.label`` against the fetched ``page``."""
    try:
        handler = ROUTES[request.label]
    except KeyError:
        raise ValueError(f"No route for label {request.label!r}") from None
    return handler(request, page, max_pagination_depth=max_pagination_depth)
